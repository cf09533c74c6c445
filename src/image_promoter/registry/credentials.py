"""Credential activation for token-authenticated registries.

The promoter never mints credentials itself. In service-account mode the
caller provides an identity token (``PROMOTER_REGISTRY_TOKEN``); activation
only checks that every registry which declares a ``service-account`` can be
served by it, so a missing token fails the run before any registry is read.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import SecretStr

from image_promoter.core.errors import AuthError
from image_promoter.core.logging import get_logger
from image_promoter.registry.models import RegistryContext, RegistryName

logger = get_logger(__name__)


class TokenCredentials:
    """``CredentialActivator`` backed by a single bearer token."""

    def __init__(self, token: SecretStr | None) -> None:
        self._token = token
        self.activated: list[RegistryName] = []

    @property
    def token(self) -> str | None:
        return self._token.get_secret_value() if self._token else None

    async def activate(self, registries: Iterable[RegistryContext]) -> None:
        for rc in registries:
            if rc.service_account is None:
                continue
            if not self.token:
                raise AuthError(
                    f"no token available to act as {rc.service_account}"
                ).with_context(registry=rc.name)
            self.activated.append(rc.name)
            logger.info(
                "credentials.activated",
                registry=rc.name,
                service_account=rc.service_account,
            )
