"""Approval authority - decides whether a task needs human sign-off."""

from typing import Protocol

from taskgate.config import Settings
from taskgate.processors.registry import ProcessorRegistry


class ApprovalAuthority(Protocol):
    def requires_approval(self, owner_id: str, task_type: str) -> bool: ...


class PolicyApprovalAuthority:
    """Task type default, overridden per account from configuration.

    Accounts listed in ``approval_exempt_accounts`` never need approval;
    accounts in ``approval_required_accounts`` always do. Exemption wins
    when an account appears in both.
    """

    def __init__(self, registry: ProcessorRegistry, settings: Settings):
        self.registry = registry
        self.exempt = set(settings.approval_exempt_accounts)
        self.required = set(settings.approval_required_accounts)

    def requires_approval(self, owner_id: str, task_type: str) -> bool:
        if owner_id in self.exempt:
            return False
        if owner_id in self.required:
            return True
        return self.registry.definition(task_type).requires_approval
