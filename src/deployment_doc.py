"""
Render the Deployment Manager configuration for a batch of worker VMs.

The configuration is emitted as JSON, which Deployment Manager accepts as
YAML content.
"""

import json
import re
from typing import Dict, List

from models import Template

FLEET_LABEL = "fleet"
TEMPLATE_LABEL = "template"

_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9_-]")


def label_value(value: str) -> str:
    """Coerce a name into a valid label value."""
    return _INVALID_LABEL_CHARS.sub("-", value.lower())[:63]


def address_name(vm_name: str) -> str:
    return f"{vm_name}-ip"


def render_deployment(
    template: Template,
    zone: str,
    base_name: str,
    count: int,
    script_uri: str = "",
) -> str:
    """
    Build the configuration for `count` VMs named base_name + index.

    Each VM gets a static external address named after it, the fleet and
    template labels, and the staged startup script when one is given.
    """
    region = zone.rsplit("-", 1)[0]
    labels = {
        FLEET_LABEL: label_value(template.fleet_name),
        TEMPLATE_LABEL: label_value(template.name),
    }

    resources: List[Dict] = []
    for index in range(count):
        vm_name = f"{base_name}{index}"
        ip_name = address_name(vm_name)

        network_interface: Dict = {
            "accessConfigs": [
                {
                    "name": "External NAT",
                    "type": "ONE_TO_ONE_NAT",
                    "natIP": f"$(ref.{ip_name}.address)",
                }
            ]
        }
        if template.subnet:
            network_interface["subnetwork"] = (
                template.subnet
                if template.subnet.startswith("projects/")
                else f"regions/{region}/subnetworks/{template.subnet}"
            )
        else:
            network_interface["network"] = "global/networks/default"

        properties: Dict = {
            "zone": zone,
            "machineType": f"zones/{zone}/machineTypes/{template.machine_type}",
            "labels": labels,
            "disks": [
                {
                    "deviceName": "boot",
                    "type": "PERSISTENT",
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {"sourceImage": template.image},
                }
            ],
            "networkInterfaces": [network_interface],
        }
        if script_uri:
            properties["metadata"] = {
                "items": [{"key": "startup-script-url", "value": script_uri}]
            }

        resources.append(
            {
                "name": ip_name,
                "type": "compute.v1.address",
                "properties": {"region": region},
            }
        )
        resources.append(
            {"name": vm_name, "type": "compute.v1.instance", "properties": properties}
        )

    return json.dumps({"resources": resources}, indent=2)
