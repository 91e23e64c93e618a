from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    """
    A user record as mirrored in the local store.

    Fields
    - id: numeric identifier, stable across sync passes; the merge key.
    - username: unique within the store (enforced by a unique index).
    - password: opaque credential hash as delivered by the remote.
    - first_name / last_name: display name split at the first space.
    - email: contact address.

    Notes
    - A record arriving with an existing `id` replaces the stored one entirely;
      there is no field-level merge.
    """

    id: int
    username: str
    password: str = Field(default="", description="Opaque credential hash", repr=False)
    first_name: str = ""
    last_name: str = ""
    email: str = ""

    @property
    def name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def public(self) -> "Record":
        """Copy with the credential hash blanked, for callers outside the engine."""
        return self.model_copy(update={"password": ""})

    @classmethod
    def from_remote(cls, user: "RemoteUser") -> "Record":
        first, _, rest = user.name.strip().partition(" ")
        last = " ".join(rest.split())
        return cls(
            id=user.id,
            username=user.username,
            password=user.password,
            first_name=first,
            last_name=last,
            email=user.email,
        )

    def to_remote(self) -> "RemoteUser":
        return RemoteUser(
            id=self.id,
            username=self.username,
            password=self.password,
            name=self.name,
            email=self.email,
        )


class RemoteUser(BaseModel):
    """Wire shape of a user as returned by `/users` and `/login`."""

    id: int
    username: str
    password: str = ""
    name: str = ""
    email: str = ""


class SyncStatus(BaseModel):
    """
    Singleton describing the outcome of the latest sync attempt.

    - last_sync: epoch milliseconds of the attempt.
    - total_records: records known at that point (fetched or mirrored).
    - is_online: whether the attempt reached the remote.
    """

    last_sync: int
    total_records: int = 0
    is_online: bool = False


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueuedMutation(BaseModel):
    """
    A write accepted while offline, waiting for replay.

    The payload is the record dict for create/update and `{"id": n}` for
    delete. Entries are never edited once written.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    action: MutationAction
    payload: Dict[str, Any]
    timestamp: int
    seq: Optional[int] = None

    def record(self) -> Record:
        return Record.model_validate(self.payload)

    def record_id(self) -> int:
        return int(self.payload["id"])
