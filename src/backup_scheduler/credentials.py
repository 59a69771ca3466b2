import json
import logging
import re

from pydantic import ValidationError

from backup_scheduler.domain.provider import ResolvedProvider, parse_credentials
from backup_scheduler.errors import ConfigurationError
from backup_scheduler.storages.protocol import JobRepository

logger = logging.getLogger(__name__)

_ALIAS_UNSAFE = re.compile(r"[^A-Za-z0-9_.+@-]+")


def remote_alias(name: str) -> str:
    """Provider names become config section names, so anything outside the safe set is collapsed."""
    return _ALIAS_UNSAFE.sub("_", name.strip()) or "remote"


class CredentialResolver:
    """
    Looks up a storage provider and turns its stored JSON config into typed credentials.
    """

    def __init__(self, repository: JobRepository):
        self.repository = repository

    async def resolve(self, provider_id: str) -> ResolvedProvider:
        """
        Raises:
            ConfigurationError: If the provider is missing, its config is empty or not valid
                JSON, its type is unsupported, or a required credential field is absent.
        """
        provider = await self.repository.get_storage_provider(provider_id)
        if provider is None:
            raise ConfigurationError(f"Storage provider '{provider_id}' not found: missing configuration")

        if not provider.config or not provider.config.strip():
            raise ConfigurationError(
                f"Storage provider {provider.name} ({provider_id}) has no config data: missing configuration"
            )

        try:
            raw = json.loads(provider.config)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid config format for storage provider {provider.name}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Invalid config format for storage provider {provider.name}: expected an object")

        try:
            credentials = parse_credentials(provider.type, raw)
        except ValidationError as e:
            # only report field locations, never the submitted values
            fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in e.errors()) or provider.type
            raise ConfigurationError(
                f"Storage provider {provider.name} ({provider.type}) has invalid or missing credentials: {fields}"
            ) from e

        logger.debug("Resolved credentials for storage provider %s (%s)", provider.name, provider.type)
        return ResolvedProvider(id=provider.id, alias=remote_alias(provider.name), credentials=credentials)
