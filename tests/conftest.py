import pytest


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's Oura settings out of the tests."""
    for name in ('OURA_TOKEN', 'OURA_BASE_URL', 'OURA_TIMEOUT'):
        monkeypatch.delenv(name, raising=False)
