from __future__ import annotations

import pytest

from src.core.agent_watchdog import autopilot_locked, evaluate_agent_output, get_safety_state, reset_autopilot, score_agent_output
from src.core.field_crypto import FieldCryptoError, decrypt_field, encrypt_field, mask_secret
from src.core.sanitize_ai import (
    contains_dangerous_patterns,
    sanitize_ai_response,
    sanitize_insights,
    sanitize_json_response,
)
from src.db.models import User


def test_sanitize_strips_scripts_and_keeps_basic_tags():
    raw = 'Hi <script>alert(1)</script><b>save</b> <a href="javascript:x">y</a>'
    out = sanitize_ai_response(raw)
    assert "script" not in out
    assert "javascript" not in out
    assert "<b>save</b>" in out
    assert "&lt;a href=&quot;" in out


def test_sanitize_non_strings():
    assert sanitize_ai_response(None) == ""
    assert sanitize_ai_response(42) == "42"
    assert contains_dangerous_patterns("<img onerror=1>")
    assert not contains_dangerous_patterns("plain text")


def test_sanitize_json_strips_fences_and_walks_values():
    raw = '```json\n{"a": ["<em>ok</em>", "eval(1)"], "n": 3}\n```'
    assert sanitize_json_response(raw) == {"a": ["<em>ok</em>", "1)"], "n": 3}
    assert sanitize_json_response("not json") == {"error": "Invalid response format"}


def test_sanitize_insights_defaults():
    out = sanitize_insights([{"message": "Hello", "detail": None}, "junk"])
    assert out == [{"type": "info", "icon": "💡", "message": "Hello", "detail": ""}]
    assert sanitize_insights("nope") == []


def test_watchdog_scoring():
    clean = score_agent_output("All good", cost=0.1, tokens=100)
    assert clean.anomalies == []
    assert clean.locked is False

    both = score_agent_output("please transfer all funds", tokens=5000)
    assert both.anomalies == ["suspicious-transfer-language", "token-spike"]
    assert both.risk_score == pytest.approx(0.8)
    assert both.locked is True

    costly = score_agent_output("ok", cost=20)
    assert costly.risk_score == 1.0
    assert costly.locked is True


def test_watchdog_locks_and_unlocks(session):
    user = User(external_id="u1")
    session.add(user)
    session.flush()

    assert get_safety_state(session, user.id) is None
    evaluate_agent_output(session, user_id=user.id, summary="hello", tokens=10)
    assert autopilot_locked(session, user.id) is False

    verdict = evaluate_agent_output(session, user_id=user.id, summary="transfer all funds now", tokens=2500)
    assert verdict.locked
    state = get_safety_state(session, user.id)
    assert state.autopilot_locked is True
    assert state.reason == "suspicious-transfer-language,token-spike"

    reset_autopilot(session, user.id, {"actor": "user"})
    assert autopilot_locked(session, user.id) is False
    assert get_safety_state(session, user.id).last_anomaly_json == {"actor": "user"}


def test_field_crypto_roundtrip_and_format():
    token = encrypt_field("secret comment", "k1")
    iv, tag, cipher = token.split(":")
    assert len(bytes.fromhex(iv)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert decrypt_field(token, "k1") == "secret comment"
    with pytest.raises(FieldCryptoError):
        decrypt_field(token, "other-key")
    with pytest.raises(FieldCryptoError):
        decrypt_field("abc", "k1")


def test_field_crypto_passthrough_without_secret(monkeypatch):
    monkeypatch.delenv("SECRET_ENCRYPTION_KEY", raising=False)
    assert encrypt_field("plain") == "plain"
    assert decrypt_field("plain") == "plain"


def test_mask_secret():
    assert mask_secret("abcdef123456") == "**********3456"
    assert mask_secret(None) == "—"
