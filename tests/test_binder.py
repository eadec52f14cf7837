"""Tests for the static website program binder and its validator."""

import json

import pytest

from infra_over_http.modules.templates.binder import (
    REGION_PARAMETER,
    ProgramConfig,
    bind,
    content_digest,
    escape_template,
    resource_group_name,
    storage_account_name,
)
from infra_over_http.modules.templates.validator import (
    TemplateError,
    TemplateValidator,
    validate_program,
)


def _config(content="<h1>A</h1>", identity="site-a", region="westus2", namespace="ns"):
    return ProgramConfig(identity=identity, content=content, region=region, namespace=namespace)


class TestBind:
    def test_is_deterministic(self):
        assert bind(_config()).to_json() == bind(_config()).to_json()

    def test_content_is_embedded(self):
        program = bind(_config(content="<h1>Hello</h1>"))
        blob = program.document["resource"]["azurerm_storage_blob"]["index"]
        assert blob["source_content"] == "<h1>Hello</h1>"
        assert blob["content_type"] == "text/html"
        assert program.content_sha256 == content_digest("<h1>Hello</h1>")

    def test_arbitrary_content_is_accepted(self):
        content = "not html at all \x00 ${var.location} %{ if true }"
        program = bind(_config(content=content))
        blob = program.document["resource"]["azurerm_storage_blob"]["index"]
        assert blob["source_content"] == escape_template(content)
        assert "$${var.location}" in blob["source_content"]
        assert "%%{ if true }" in blob["source_content"]

    def test_region_is_the_variable_default(self):
        program = bind(_config(region="northeurope"))
        assert program.document["variable"][REGION_PARAMETER]["default"] == "northeurope"

    def test_storage_account_depends_on_identity_only(self):
        a1 = bind(_config(content="one")).storage_account_name
        a2 = bind(_config(content="two")).storage_account_name
        b = bind(_config(identity="site-b")).storage_account_name
        assert a1 == a2
        assert a1 != b

    def test_resource_groups_differ_for_ids_differing_only_in_case(self):
        lower = bind(_config(identity="site-a")).document["resource"]["azurerm_resource_group"]["site"]["name"]
        upper = bind(_config(identity="Site-A")).document["resource"]["azurerm_resource_group"]["site"]["name"]
        assert lower.lower() != upper.lower()
        assert lower == resource_group_name("ns", "site-a")

    def test_website_url_output_points_at_cdn_endpoint(self):
        program = bind(_config())
        assert "azurerm_cdn_endpoint.site.fqdn" in program.document["output"]["website_url"]["value"]

    def test_renders_valid_json(self):
        document = json.loads(bind(_config()).to_json())
        assert set(document) == {"terraform", "provider", "variable", "resource", "output"}


def test_storage_account_name_shape():
    name = storage_account_name("infra_over_http", "some.long-identity_name")
    assert len(name) == 24
    assert name.isalnum() and name.islower()


class TestValidator:
    def _document(self):
        return bind(_config()).document

    def test_bound_program_is_valid(self):
        assert TemplateValidator.validate(self._document()) == (True, [])

    def test_missing_resources(self):
        is_valid, errors = TemplateValidator.validate({"output": {"website_url": {"value": "x"}}})
        assert not is_valid
        assert errors == ["Program declares no resources"]

    def test_missing_website_url(self):
        document = self._document()
        del document["output"]["website_url"]
        with pytest.raises(TemplateError, match="website_url"):
            validate_program(document)

    def test_dangling_resource_reference(self):
        document = self._document()
        document["resource"]["azurerm_cdn_endpoint"]["site"]["profile_name"] = "${azurerm_cdn_profile.other.name}"
        with pytest.raises(TemplateError, match="azurerm_cdn_profile.other"):
            validate_program(document)

    def test_undeclared_variable(self):
        document = self._document()
        document["resource"]["azurerm_resource_group"]["site"]["location"] = "${var.region}"
        is_valid, errors = TemplateValidator.validate(document)
        assert not is_valid
        assert "Reference to undeclared variable 'var.region'" in errors

    def test_escaped_reference_is_ignored(self):
        document = self._document()
        document["resource"]["azurerm_storage_blob"]["index"]["source_content"] = "$${nothing.here}"
        assert TemplateValidator.validate(document)[0]

    def test_invalid_storage_account_name(self):
        document = self._document()
        document["resource"]["azurerm_storage_account"]["site"]["name"] = "Not-Valid"
        is_valid, errors = TemplateValidator.validate(document)
        assert not is_valid
        assert "invalid name 'Not-Valid'" in errors[0]
