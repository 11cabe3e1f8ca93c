"""Authorization gates for quotation and sale operations.

A guard wraps one capability from the role matrix and, for some transitions,
a relationship between the actor and the quotation (creator, assignee).
"""

from common.exceptions import Unauthorized
from common.permissions import log_denied, role_has_capability


class Guard:
    def __init__(self, capability):
        self.capability = capability

    def allows(self, actor, quotation=None):
        raise NotImplementedError

    def check(self, actor, quotation=None, event=None):
        if self.allows(actor, quotation):
            return
        log_denied(
            actor,
            self.capability,
            guard=self.__class__.__name__,
            quotation=getattr(quotation, "quotation_number", None),
            event=event,
        )
        raise Unauthorized(errors={"capability": self.capability})

    def __repr__(self):
        return f"{self.__class__.__name__}({self.capability!r})"


def _is_creator(actor, quotation):
    return quotation is not None and actor is not None and quotation.created_by_id == actor.id


class CapabilityGuard(Guard):
    def allows(self, actor, quotation=None):
        return role_has_capability(actor, self.capability)


class CreatorOrCapabilityGuard(Guard):
    def allows(self, actor, quotation=None):
        if not getattr(actor, "is_authenticated", False):
            return False
        return _is_creator(actor, quotation) or role_has_capability(actor, self.capability)


class CreatorCapabilityGuard(Guard):
    """Capability holders may act only on quotations they created."""

    def allows(self, actor, quotation=None):
        return role_has_capability(actor, self.capability) and _is_creator(actor, quotation)


class AssigneeCapabilityGuard(Guard):
    """Capability holders may act on quotations assigned to them or to nobody."""

    def allows(self, actor, quotation=None):
        if not role_has_capability(actor, self.capability):
            return False
        return quotation.assigned_delivery_id is None or quotation.assigned_delivery_id == actor.id
