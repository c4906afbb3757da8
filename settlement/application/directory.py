"""Read-only views of the user directory and the service catalog."""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from settlement.domain.errors import Unauthenticated, UnknownService
from settlement.domain.models import CatalogService, User
from settlement.domain.status import OPERATOR_ROLES, Role


@dataclass(frozen=True)
class Actor:
    id: Optional[int]
    role: Role

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


SYSTEM_ACTOR = Actor(id=None, role=Role.SYSTEM)


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def actor_for(self, user_id: int) -> Actor:
        user = self.get(user_id)
        if user is None or not user.active:
            raise Unauthenticated("Unknown or inactive user")
        return Actor(id=user.id, role=user.role)

    def has_role(self, user_id: int, role: Role) -> bool:
        user = self.get(user_id)
        return user is not None and user.active and user.role == role


class Catalog:
    def __init__(self, db: Session):
        self.db = db

    def snapshot(self, service_ids: Iterable[int]) -> Dict[int, CatalogService]:
        """Active catalog rows by id; any unknown or retired id fails the lookup."""
        wanted = set(service_ids)
        rows = (
            self.db.query(CatalogService)
            .filter(CatalogService.id.in_(wanted), CatalogService.active.is_(True))
            .all()
        )
        found = {row.id: row for row in rows}
        missing = wanted - found.keys()
        if missing:
            raise UnknownService(f"Unknown or inactive services: {sorted(missing)}")
        return found
