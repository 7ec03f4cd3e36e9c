import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "OPENAI_MODEL", "OPENAI_TEMPERATURE", "OPENAI_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    main.get_settings.cache_clear()
    yield
    main.get_settings.cache_clear()


@pytest.fixture()
def client():
    return TestClient(main.app, raise_server_exceptions=False)


@pytest.fixture()
def fake_provider(monkeypatch):
    """Replace the OpenAI call with a canned reply and record what it was given."""

    class FakeProvider:
        def __init__(self):
            self.reply = "[]"
            self.error = None
            self.calls = []

        async def __call__(self, front_image):
            self.calls.append(front_image)
            if self.error is not None:
                raise self.error
            return self.reply

    provider = FakeProvider()
    monkeypatch.setattr(main, "call_openai", provider)
    return provider
