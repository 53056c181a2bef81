from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from curriculum_studio.models import ProgramState


class MutationError(BaseModel):
    code: str
    message: str
    entity: Optional[str] = None
    entity_id: Optional[str] = None


class NotFoundError(MutationError):
    code: str = "NOT_FOUND"


class DuplicateIdError(MutationError):
    code: str = "DUPLICATE_ID"


class EntityInUseError(MutationError):
    code: str = "ENTITY_IN_USE"
    count: int = 0


class InvalidInputError(MutationError):
    code: str = "INVALID_INPUT"


class SelectionRequiredError(MutationError):
    """The caller has to pick one of ``candidates`` and retry with it."""

    code: str = "SELECTION_REQUIRED"
    candidates: list[str] = Field(default_factory=list)


class Outcome(BaseModel):
    state: ProgramState
    error: Optional[MutationError] = None
    created_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def success(state: ProgramState, created_id: Optional[str] = None) -> Outcome:
    return Outcome(state=state, created_id=created_id)


def failure(state: ProgramState, error: MutationError) -> Outcome:
    return Outcome(state=state, error=error)


def not_found(state: ProgramState, entity: str, entity_id: str) -> Outcome:
    return failure(state, NotFoundError(message=f"{entity} not found", entity=entity, entity_id=entity_id))


def in_use(state: ProgramState, entity: str, entity_id: str, count: int, used_by: str) -> Outcome:
    return failure(
        state,
        EntityInUseError(
            message=f"Cannot delete: {count} {used_by} use this {entity}",
            entity=entity,
            entity_id=entity_id,
            count=count,
        ),
    )


def invalid(state: ProgramState, message: str, entity: Optional[str] = None, entity_id: Optional[str] = None) -> Outcome:
    return failure(state, InvalidInputError(message=message, entity=entity, entity_id=entity_id))
