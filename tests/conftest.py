"""Shared pytest fixtures and configuration."""

import pytest

from helpers import make_config
from ucrbridge.shell.credentials import CertificateCredentials, InteractiveCredentials


@pytest.fixture
def certificate_credentials():
    return CertificateCredentials(
        app_id="11111111-2222-3333-4444-555555555555",
        certificate_thumbprint="A1B2C3D4E5F6",
        tenant_directory_id="contoso.onmicrosoft.com",
    )


@pytest.fixture
def interactive_credentials():
    return InteractiveCredentials(username="admin@contoso.com", secret="hunter2-secret")


@pytest.fixture
def fake_config():
    """Factory: ``fake_config("mfa", command_timeout=1)``."""
    return make_config
