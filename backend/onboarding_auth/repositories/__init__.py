from onboarding_auth.repositories.base import CredentialStore
from onboarding_auth.repositories.memory import InMemoryCredentialStore
from onboarding_auth.repositories.sql import SqlAlchemyCredentialStore

__all__ = ["CredentialStore", "InMemoryCredentialStore", "SqlAlchemyCredentialStore"]
