from __future__ import annotations

import pytest

# Built-in sources point at live job boards; tests opt in to seeding explicitly.
ISOLATED_ENV = {
    "JOBINTEL_SEED_BUILTIN_SOURCES": "false",
    "JOBINTEL_API_KEY": "",
    "JOBINTEL_API_TOKENS_JSON": "",
    "CRON_SECRET": "",
}


@pytest.fixture(autouse=True)
def isolated_jobintel_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name, value in ISOLATED_ENV.items():
        monkeypatch.setenv(name, value)
