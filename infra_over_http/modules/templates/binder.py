"""
Static website program.

Turns caller content into a Terraform JSON document describing an Azure
static website: resource group, StorageV2 account with static website
hosting, the index.html blob holding the content, and a CDN endpoint in
front of the storage web endpoint.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict

from infra_over_http.modules.templates.validator import validate_program

REGION_PARAMETER = "location"
INDEX_DOCUMENT = "index.html"


@dataclass(frozen=True)
class ProgramConfig:
    identity: str
    content: str
    region: str
    namespace: str


@dataclass(frozen=True)
class ProvisioningProgram:
    config: ProgramConfig
    document: Dict[str, Any] = field(compare=False)

    @property
    def storage_account_name(self) -> str:
        return self.document["resource"]["azurerm_storage_account"]["site"]["name"]

    @property
    def content_sha256(self) -> str:
        return self.document["output"]["content_sha256"]["value"]

    def to_json(self) -> str:
        """Stable serialization; identical configs render byte-identical files."""
        return json.dumps(self.document, indent=2, sort_keys=True)


def deployment_digest(namespace: str, identity: str) -> str:
    return hashlib.sha1(f"{namespace}/{identity}".encode("utf-8")).hexdigest()[:22]


def storage_account_name(namespace: str, identity: str) -> str:
    return f"st{deployment_digest(namespace, identity)}"


def resource_group_name(namespace: str, identity: str) -> str:
    # Azure compares resource group names case-insensitively; identities are case-sensitive
    return f"rg-{namespace}-{deployment_digest(namespace, identity)}"


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def escape_template(value: str) -> str:
    """Escape Terraform interpolation and directive sequences so the value is taken literally."""
    return value.replace("${", "$${").replace("%{", "%%{")


def bind(config: ProgramConfig) -> ProvisioningProgram:
    account = storage_account_name(config.namespace, config.identity)
    resource_group = "${azurerm_resource_group.site.name}"
    web_host = "${azurerm_storage_account.site.primary_web_host}"

    document = {
        "terraform": {
            "required_providers": {
                "azurerm": {"source": "hashicorp/azurerm", "version": "~> 3.0"},
            },
        },
        "provider": {"azurerm": [{"features": {}}]},
        "variable": {
            REGION_PARAMETER: {
                "type": "string",
                "description": "Azure region for all resources",
                "default": config.region,
            },
        },
        "resource": {
            "azurerm_resource_group": {
                "site": {
                    "name": resource_group_name(config.namespace, config.identity),
                    "location": f"${{var.{REGION_PARAMETER}}}",
                },
            },
            "azurerm_storage_account": {
                "site": {
                    "name": account,
                    "resource_group_name": resource_group,
                    "location": "${azurerm_resource_group.site.location}",
                    "account_kind": "StorageV2",
                    "account_tier": "Standard",
                    "account_replication_type": "LRS",
                    "enable_https_traffic_only": True,
                    # error_404_document is not provisioned
                    "static_website": [{"index_document": INDEX_DOCUMENT}],
                },
            },
            "azurerm_storage_blob": {
                "index": {
                    "name": INDEX_DOCUMENT,
                    "storage_account_name": "${azurerm_storage_account.site.name}",
                    "storage_container_name": "$web",
                    "type": "Block",
                    "content_type": "text/html",
                    "source_content": escape_template(config.content),
                },
            },
            "azurerm_cdn_profile": {
                "site": {
                    "name": f"profile-{account}",
                    "resource_group_name": resource_group,
                    "location": "global",
                    "sku": "Standard_Microsoft",
                },
            },
            "azurerm_cdn_endpoint": {
                "site": {
                    "name": f"cdn-endpnt-{account}",
                    "profile_name": "${azurerm_cdn_profile.site.name}",
                    "resource_group_name": resource_group,
                    "location": "global",
                    "is_http_allowed": False,
                    "is_https_allowed": True,
                    "origin_host_header": web_host,
                    "querystring_caching_behaviour": "NotSet",
                    "origin": [
                        {
                            "name": "origin-storage-account",
                            "host_name": web_host,
                            "https_port": 443,
                        },
                    ],
                },
            },
        },
        "output": {
            "website_url": {
                "description": "CDN endpoint serving the site; allow it some time after apply to become ready",
                "value": "https://${azurerm_cdn_endpoint.site.fqdn}/",
            },
            "content_sha256": {"value": content_digest(config.content)},
        },
    }

    validate_program(document)
    return ProvisioningProgram(config=config, document=document)
