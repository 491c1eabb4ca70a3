from typing import Optional
from pydantic import BaseModel, Field
from integram_compat.permissions.grants import GrantMap, GrantResolver, is_admin
from integram_compat.api.exceptions import PermissionDenied


class Principal(BaseModel):
    """Authenticated user of one legacy database"""

    db: str
    user_id: int
    username: str
    token: str
    xsrf: Optional[str] = None
    role_id: Optional[int] = None
    role: str = ""

    grants: GrantMap = Field(default_factory=GrantMap)

    @property
    def is_admin(self) -> bool:
        return is_admin(self.username)

    def permitted(self, resolver: GrantResolver, id: int, t: int = 0, grant: str = "WRITE") -> bool:
        return resolver.check(self.grants, id, t, grant, self.username)

    def require(self, resolver: GrantResolver, id: int, t: int = 0, grant: str = "WRITE"):
        """Raise PermissionDenied unless the grant is held"""
        if not self.permitted(resolver, id, t, grant):
            raise PermissionDenied(f"No {grant} access to {id}")

    def may_export(self) -> bool:
        """Full database export is open to exporters of the root, admin and the db owner"""
        return self.grants.can_export(1) or self.is_admin or self.username == self.db
