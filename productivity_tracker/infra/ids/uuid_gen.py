from __future__ import annotations

import uuid

from productivity_tracker.domain.common.ports import IdGenerator


class UuidGenerator(IdGenerator):
    """Random 32-character hex ids for tasks and other documents without a natural key."""

    def new_id(self) -> str:
        return uuid.uuid4().hex
