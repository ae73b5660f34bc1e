from __future__ import annotations

from typing import Optional, Protocol

from sysauth.logging import get_logger
from sysauth.service.transitions import PrincipalEvent, Transition, apply_principal_event
from sysauth.storage.errors import ConstraintViolation, RecordNotFound
from sysauth.storage.models import Principal

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3


class PrincipalWriter(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def update_principal(self, principal: Principal, *, expected_version: int) -> bool: ...


def commit_principal_event(
    store: PrincipalWriter, principal: Principal, event: PrincipalEvent
) -> Transition[Principal]:
    """Apply ``event`` and persist the result with compare-and-swap on ``version``.

    ``principal`` may be stale. When the stored row has moved on, the row is
    re-read and the event replayed against it, so a deactivation or unlock
    committed in between is kept rather than overwritten. The returned
    transition's effects come from the state the event was finally applied to.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        transition = apply_principal_event(principal, event)
        if transition.state is principal:
            return transition
        if store.update_principal(transition.state, expected_version=principal.version):
            return transition
        current = store.get_principal(principal.id)
        if current is None:
            raise RecordNotFound("principal", principal.id)
        principal = current
    logger.warning(
        "principal_write_gave_up", principal_id=principal.id, event=type(event).__name__
    )
    raise ConstraintViolation("principal changed concurrently", {"principal_id": principal.id})
