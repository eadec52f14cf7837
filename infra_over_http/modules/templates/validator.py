import re
from typing import Any, Dict, Iterator, List, Tuple
import logging

logger = logging.getLogger(__name__)

# ${type.name...} or ${var.name}; a leading "$$" is an escaped literal
REFERENCE_PATTERN = re.compile(r"(?<!\$)\$\{([a-z][a-z0-9_]*)\.([a-z][a-z0-9_]*)")
STORAGE_ACCOUNT_NAME_PATTERN = re.compile(r"^[a-z0-9]{3,24}$")
REQUIRED_OUTPUTS = ("website_url",)


class TemplateError(Exception):
    """Raised when a generated provisioning program breaks a structural constraint."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def _walk_strings(node: Any) -> Iterator[str]:
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _walk_strings(value)
    elif isinstance(node, list):
        for value in node:
            yield from _walk_strings(value)


def _declared_resources(document: Dict[str, Any]) -> set:
    declared = set()
    for resource_type, instances in (document.get("resource") or {}).items():
        if isinstance(instances, dict):
            for name in instances:
                declared.add((resource_type, name))
    return declared


class TemplateValidator:
    """Validate a Terraform JSON document produced by the binder"""

    @staticmethod
    def validate(document: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """
        Check the structural constraints of a program document.
        Returns (is_valid, list_of_errors)
        """
        errors = []

        resources = document.get("resource")
        if not isinstance(resources, dict) or not resources:
            errors.append("Program declares no resources")
            return False, errors

        outputs = document.get("output")
        if not isinstance(outputs, dict):
            errors.append("Program declares no outputs")
            outputs = {}
        for name in REQUIRED_OUTPUTS:
            if name not in outputs:
                errors.append(f"Required output '{name}' is missing")

        declared = _declared_resources(document)
        variables = set((document.get("variable") or {}).keys())
        for value in _walk_strings({"resource": resources, "output": outputs}):
            for ref_type, ref_name in REFERENCE_PATTERN.findall(value):
                if ref_type == "var":
                    if ref_name not in variables:
                        errors.append(f"Reference to undeclared variable 'var.{ref_name}'")
                elif (ref_type, ref_name) not in declared:
                    errors.append(f"Reference to undeclared resource '{ref_type}.{ref_name}'")

        for name, account in (resources.get("azurerm_storage_account") or {}).items():
            account_name = account.get("name", "") if isinstance(account, dict) else ""
            if not STORAGE_ACCOUNT_NAME_PATTERN.match(account_name):
                errors.append(
                    f"Storage account '{name}' has invalid name '{account_name}' "
                    "(3-24 lowercase letters and digits)"
                )

        if errors:
            logger.debug(f"Program validation failed: {errors}")
        return len(errors) == 0, errors


def validate_program(document: Dict[str, Any]) -> None:
    """Raise TemplateError if the document is structurally invalid."""
    is_valid, errors = TemplateValidator.validate(document)
    if not is_valid:
        raise TemplateError(errors)
