"""Tests for TokenCredentials."""

import pytest
from pydantic import SecretStr

from image_promoter.core.errors import AuthError
from image_promoter.registry.contracts import CredentialActivator
from image_promoter.registry.credentials import TokenCredentials
from image_promoter.registry.models import RegistryContext
from tests._support.builders import PROD, SRC


class TestTokenCredentials:
    def test_is_activator(self):
        assert isinstance(TokenCredentials(None), CredentialActivator)

    @pytest.mark.asyncio
    async def test_activates_service_account_registries(self):
        creds = TokenCredentials(SecretStr("tok"))
        await creds.activate([RegistryContext(SRC, src=True), RegistryContext(PROD, service_account="sa@x")])
        assert creds.activated == [PROD]
        assert creds.token == "tok"

    @pytest.mark.asyncio
    async def test_missing_token(self):
        with pytest.raises(AuthError) as exc:
            await TokenCredentials(None).activate([RegistryContext(PROD, service_account="sa@x")])
        assert exc.value.context.registry == PROD

    @pytest.mark.asyncio
    async def test_no_service_accounts_needs_no_token(self):
        creds = TokenCredentials(None)
        await creds.activate([RegistryContext(SRC, src=True)])
        assert creds.activated == []
