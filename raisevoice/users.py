# User records: first-sign-in provisioning and lookups

import logging
from typing import List, Optional

from .errors import AuthorizationError, NotFound
from .gateway import PersistenceGateway
from .models import Identity, User

logger = logging.getLogger(__name__)

COLLECTION = "users"


def require_admin(actor: User, action: str):
    if not actor.is_admin:
        logger.warning("Non-admin %s attempted %s", actor.id, action)
        raise AuthorizationError(f"Only administrators may {action}")


class UserDirectory:
    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    def ensure(self, identity: Identity) -> User:
        """Return the stored user, creating it on first sign-in.

        Later sign-ins refresh the identity-owned fields (name, email, admin
        flag); credits and moderation are never touched here.
        """
        path = f"{COLLECTION}/{identity.id}"
        doc = self.gateway.read(path)
        if doc is None:
            user = User(id=identity.id, name=identity.name, email=identity.email,
                        mobile=identity.mobile, is_admin=identity.is_admin)
            if self.gateway.create(path, user.to_doc()):
                logger.info("Provisioned user %s (admin=%s)", identity.id, identity.is_admin)
                return user
            # A concurrent sign-in provisioned the record first
            doc = self.gateway.read(path)
            if doc is None:
                raise NotFound(f"User {identity.id} disappeared during provisioning")
        fields = {}
        for name in ("name", "email", "mobile", "is_admin"):
            value = getattr(identity, name)
            if value not in ("", None) and doc.get(name) != value:
                fields[name] = value
        if fields:
            self.gateway.merge(path, fields)
            doc.update(fields)
        return User(**doc)

    def get(self, user_id: str) -> User:
        doc = self.gateway.read(f"{COLLECTION}/{user_id}")
        if doc is None:
            raise NotFound(f"User {user_id} not found")
        return User(**doc)

    def find(self, user_id: str) -> Optional[User]:
        doc = self.gateway.read(f"{COLLECTION}/{user_id}")
        return User(**doc) if doc is not None else None

    def list_users(self) -> List[User]:
        docs = self.gateway.read(COLLECTION) or {}
        users = [User(**doc) for doc in docs.values()]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users
