from __future__ import annotations

"""Domain error taxonomy shared by the engine, the service and the HTTP layer."""

from typing import Any


class DomainError(Exception):
    """Base error carrying a stable code for API responses."""

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class ValidationError(DomainError, ValueError):
    """Malformed identifier, value object or request envelope."""

    code = "VALIDATION_ERROR"


class BusinessRuleViolationError(DomainError, ValueError):
    """A well-formed request that the domain rules refuse."""

    code = "BUSINESS_RULE_VIOLATION"


class EntityNotFoundError(DomainError, KeyError):
    """Lookup of a team, repo, quest or readiness snapshot failed."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} with id '{entity_id}' not found", entity=entity, entity_id=entity_id)
