from __future__ import annotations

from typing import Any


class AcademyError(Exception):
    """Base for business-rule failures surfaced to API callers."""

    code = 'academy_error'

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload = {'code': self.code, 'message': self.message}
        payload.update(self.details)
        return payload


class InvalidTransition(AcademyError, ValueError):
    code = 'invalid_transition'

    def __init__(self, current: str, action: str, *, entity: str = 'session', message: str | None = None) -> None:
        self.current = current
        self.action = action
        super().__init__(
            message or f'Cannot {action} a {entity} in status {current}',
            entity=entity,
            current=current,
            action=action,
        )


class SessionTerminal(AcademyError, ValueError):
    code = 'session_terminal'

    def __init__(self, session_id: int, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(
            f'Session {session_id} is {status} and can no longer change',
            session_id=session_id,
            status=status,
        )


class ScheduleConflict(AcademyError, ValueError):
    code = 'schedule_conflict'

    def __init__(self, conflicts: list[dict], message: str = 'Proposed time conflicts with existing commitments') -> None:
        self.conflicts = conflicts
        super().__init__(message, conflicts=conflicts)


class InvalidRange(AcademyError, ValueError):
    code = 'invalid_range'


class NotFound(AcademyError, LookupError):
    code = 'not_found'

    def __init__(self, entity: str, identifier: Any) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f'{entity} {identifier} not found', entity=entity, id=identifier)


class SubscriptionInactive(AcademyError, ValueError):
    code = 'subscription_inactive'

    def __init__(self, subscription_id: int) -> None:
        self.subscription_id = subscription_id
        super().__init__(
            f'Subscription {subscription_id} was not active during the billing period',
            subscription_id=subscription_id,
        )


class InvoiceImmutable(AcademyError, ValueError):
    code = 'invoice_immutable'
