"""Viewer identities supplied by the authentication provider, plus anonymous pseudo-ids."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from shared.enums import UserRole
from shared.utils import generate_id, setup_logging

logger = setup_logging("identity")


@dataclass(frozen=True)
class Identity:
    """Who is acting. The core reads identities; it never authenticates anyone."""

    user_id: str
    display_name: str = ""
    role: UserRole = UserRole.STUDENT
    anonymous: bool = False

    @property
    def is_instructor(self) -> bool:
        return self.role == UserRole.INSTRUCTOR and not self.anonymous

    @classmethod
    def anonymous_viewer(cls, pseudo_id: str, display_name: str | None = None) -> "Identity":
        return cls(
            user_id=pseudo_id,
            display_name=display_name or "Anonymous",
            role=UserRole.STUDENT,
            anonymous=True,
        )


class PseudoIdStore:
    """Locally persisted pseudo-id for anonymous viewers.

    Client-side helper: a viewer process such as a kiosk keeps its
    id here and sends it as the ``X-Session-Id`` header. The server never
    reads this file; it only sees the header.

    The id is stable for as long as the file survives. Deleting the file (or
    clearing client storage) yields a new id, so likes and votes tied to it can
    be reset by the viewer. This is a convenience, not a security boundary.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_or_create(self) -> str:
        if self.path.exists():
            try:
                pseudo_id = json.loads(self.path.read_text(encoding="utf-8")).get("pseudoId")
                if isinstance(pseudo_id, str) and pseudo_id:
                    return pseudo_id
            except (OSError, ValueError, AttributeError) as exc:
                logger.warning(f"Ignoring unreadable pseudo-id file {self.path}: {exc}")

        pseudo_id = generate_id("anon")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"pseudoId": pseudo_id}), encoding="utf-8")
        logger.info("Created anonymous pseudo-id %s", pseudo_id)
        return pseudo_id

    def reset(self) -> None:
        self.path.unlink(missing_ok=True)

    def identity(self, display_name: str | None = None) -> Identity:
        return Identity.anonymous_viewer(self.get_or_create(), display_name)
