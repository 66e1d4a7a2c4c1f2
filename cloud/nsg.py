"""
FirewallClient backed by an Azure network security group.

The rule is addressed by (resource group, NSG name, rule name).  Changing its
action fetches the whole NSG, edits ``securityRules[name].properties.access``
and PUTs the whole ruleset back, waiting for provisioning to finish.
"""
from __future__ import annotations

import copy
import logging
from typing import Optional

from cloud.arm import ArmSession
from cloud.base import CloudError, FirewallClient
from renewal.models import RuleAction

logger = logging.getLogger(__name__)

_NETWORK_API_VERSION = "2023-09-01"


class NsgFirewall(FirewallClient):
    def __init__(self, arm: ArmSession) -> None:
        self.arm = arm

    def _path(self, resource_group: str, group: str) -> str:
        return self.arm.resource_path(
            resource_group, f"Microsoft.Network/networkSecurityGroups/{group}"
        )

    def _get_group(self, resource_group: str, group: str) -> dict:
        return self.arm.get(self._path(resource_group, group), _NETWORK_API_VERSION)

    def get_rule(self, resource_group: str, group: str, name: str) -> Optional[dict]:
        return _find_rule(self._get_group(resource_group, group), name)

    def set_rule_action(self, resource_group: str, group: str, name: str, action: RuleAction) -> None:
        nsg = copy.deepcopy(self._get_group(resource_group, group))
        rule = _find_rule(nsg, name)
        if rule is None:
            raise CloudError(f"Rule {name!r} not found in network security group {group!r}")
        rule.setdefault("properties", {})["access"] = action.value
        self.arm.put(self._path(resource_group, group), nsg, _NETWORK_API_VERSION)
        logger.info("Set %s/%s access to %s", group, name, action.value)


def _find_rule(nsg: dict, name: str) -> Optional[dict]:
    for rule in nsg.get("properties", {}).get("securityRules", []):
        if rule.get("name") == name:
            return rule
    return None
