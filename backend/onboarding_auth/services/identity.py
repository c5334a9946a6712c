"""Identity lookups shared by the MFA engines and the login orchestrator."""

from uuid import UUID

from onboarding_auth.core.exceptions import IdentityNotFoundError, ReauthenticationRequiredError
from onboarding_auth.core.security import verify_password
from onboarding_auth.repositories.base import CredentialStore, Identity


async def get_identity_or_raise(store: CredentialStore, identity_id: UUID) -> Identity:
    identity = await store.get_identity(identity_id)
    if identity is None:
        raise IdentityNotFoundError()
    return identity


async def reauthenticate(store: CredentialStore, identity_id: UUID, password: str) -> Identity:
    """Re-check the current password before a sensitive MFA change."""
    identity = await get_identity_or_raise(store, identity_id)
    if not verify_password(password, identity.password_hash, identity.password_salt):
        raise ReauthenticationRequiredError()
    return identity
