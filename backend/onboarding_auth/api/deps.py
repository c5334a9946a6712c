from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from onboarding_auth.core.errors import unauthorized
from onboarding_auth.db.session import get_db
from onboarding_auth.repositories.base import CredentialStore
from onboarding_auth.repositories.sql import SqlAlchemyCredentialStore
from onboarding_auth.services.auth import AuthService
from onboarding_auth.services.notification import NotificationDispatcher


async def get_store(db: Annotated[AsyncSession, Depends(get_db)]) -> CredentialStore:
    return SqlAlchemyCredentialStore(db)


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


async def get_auth_service(
    store: Annotated[CredentialStore, Depends(get_store)],
    notifier: Annotated[NotificationDispatcher, Depends(get_notifier)],
) -> AuthService:
    return AuthService(store, notifier)


def get_current_identity_id(request: Request) -> UUID:
    """
    Principal established by the session layer in front of this router.

    The session layer sets request.state.identity_id once a login has
    reached AUTHENTICATED or MFA_SETUP_REQUIRED.
    """
    identity_id = getattr(request.state, "identity_id", None)
    if identity_id is None:
        raise unauthorized("Authentication required")
    if isinstance(identity_id, UUID):
        return identity_id
    try:
        return UUID(str(identity_id))
    except ValueError:
        raise unauthorized("Invalid session principal")
