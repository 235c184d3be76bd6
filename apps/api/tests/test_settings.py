from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_lifecycle_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TRANSITION_LOCK_TIMEOUT_SECONDS", "DEFAULT_CONVERSION_STAGE", "DEFAULT_DEAL_VALUE"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.transition_lock_timeout_seconds == 5.0
    assert settings.default_conversion_stage == "gift_sent"
    assert settings.default_deal_value == Decimal("5000")


def test_conversion_stage_must_be_a_pipeline_stage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEFAULT_CONVERSION_STAGE", "won_maybe")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_legacy_stage_is_accepted_for_conversion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEFAULT_CONVERSION_STAGE", "qualification")

    assert Settings(_env_file=None).default_conversion_stage == "qualification"


def test_lock_timeout_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSITION_LOCK_TIMEOUT_SECONDS", "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
