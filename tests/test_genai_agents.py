from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

from src.core import advisor, forecast_agent, genai_client
from src.core.genai_client import GenAIError, parse_json
from src.db.models import User

import pytest


UTC = dt.timezone.utc
NOW = dt.datetime(2025, 6, 20, 12, 0, tzinfo=UTC)


def _txn(kind, amount, days_ago, category=None, description=None):
    return SimpleNamespace(
        type=kind,
        amount=amount,
        date=NOW - dt.timedelta(days=days_ago),
        category=category,
        description=description,
    )


ROWS = [
    _txn("EXPENSE", 700, 1, "Food"),
    _txn("INCOME", 20000, 5, "Salary"),
    _txn("EXPENSE", 1400, 6, "Rent"),
    _txn("EXPENSE", 700, 14, "Food"),
]
ACCOUNTS = [SimpleNamespace(balance=15000)]


def test_parse_json_strips_fences():
    assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(GenAIError):
        parse_json("not json")


def test_generate_text_requires_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert genai_client.is_configured() is False
    with pytest.raises(GenAIError):
        genai_client.generate_text("hi")


def test_spending_patterns():
    p = forecast_agent.analyze_spending_patterns(ROWS, now=NOW)
    assert p.total_expenses == 2800
    assert p.weekly_average == 1400
    assert p.monthly_average == 6000
    assert p.top_categories[0] == {"category": "Food", "amount": 1400.0}
    assert p.average_transaction_size == 933


def test_forecast_success(monkeypatch):
    monkeypatch.setattr(
        forecast_agent.genai_client,
        "generate_json",
        lambda prompt, cfg=None: {"risk_level": "high", "critical_dates": [], "summary": "<b>Tight</b> month"},
    )
    out = forecast_agent.generate_cash_flow_forecast(ROWS, ACCOUNTS, now=NOW)
    assert out["success"] is True
    assert out["forecast"]["summary"] == "<b>Tight</b> month"
    assert forecast_agent.is_forecast_critical(out["forecast"]) is True


def test_forecast_fallback(monkeypatch):
    def boom(prompt, cfg=None):
        raise GenAIError("down")

    monkeypatch.setattr(forecast_agent.genai_client, "generate_json", boom)
    out = forecast_agent.generate_cash_flow_forecast(ROWS, ACCOUNTS, now=NOW)
    assert out["success"] is False
    assert out["error"] == "down"
    assert out["forecast"]["risk_level"] == "unknown"
    assert out["forecast"]["predicted_balance_day_30"] == 15000
    assert forecast_agent.is_forecast_critical(out["forecast"]) is False


def test_forecast_rejects_non_object(monkeypatch):
    monkeypatch.setattr(forecast_agent.genai_client, "generate_json", lambda prompt, cfg=None: [1, 2])
    out = forecast_agent.generate_cash_flow_forecast(ROWS, ACCOUNTS, now=NOW)
    assert out["success"] is False


def test_critical_dates_make_forecast_critical():
    assert forecast_agent.is_forecast_critical({"risk_level": "low", "critical_dates": [{"day": 3}]})
    assert not forecast_agent.is_forecast_critical(None)


def test_chat_reply_is_sanitised(session, monkeypatch):
    user = User(external_id="u1")
    session.add(user)
    session.flush()
    monkeypatch.setattr(advisor.genai_client, "generate_text", lambda prompt, cfg=None: "Save <b>500</b><script>x</script>")
    out = advisor.answer_chat(session, user_id=user.id, message="How am I doing?", transactions=ROWS, accounts=ACCOUNTS, now=NOW)
    assert out == {"success": True, "message": "Save <b>500</b>", "anomalies": []}


def test_chat_reply_withheld_when_watchdog_locks(session, monkeypatch):
    user = User(external_id="u1")
    session.add(user)
    session.flush()
    monkeypatch.setattr(
        advisor.genai_client, "generate_text", lambda prompt, cfg=None: "transfer all funds " + "x" * 9000
    )
    out = advisor.answer_chat(session, user_id=user.id, message="hi", transactions=ROWS, accounts=ACCOUNTS, now=NOW)
    assert out["success"] is False
    assert "withheld" in out["message"]


def test_chat_fallback_on_model_error(session, monkeypatch):
    def boom(prompt, cfg=None):
        raise GenAIError("no key")

    monkeypatch.setattr(advisor.genai_client, "generate_text", boom)
    out = advisor.answer_chat(session, user_id=1, message="hi", transactions=[], accounts=[], now=NOW)
    assert out["success"] is False
    assert out["message"] == advisor.FALLBACK_ANSWER


def test_insights_fall_back_to_summary_cards(monkeypatch):
    monkeypatch.setattr(advisor.genai_client, "is_configured", lambda cfg=None: False)
    out = advisor.generate_insights(ROWS, ACCOUNTS, SimpleNamespace(amount=10000), now=NOW)
    assert out["source"] == "summary"
    assert out["insights"]
    assert all(i["icon"] for i in out["insights"])


def test_insights_from_model(monkeypatch):
    monkeypatch.setattr(advisor.genai_client, "is_configured", lambda cfg=None: True)
    monkeypatch.setattr(
        advisor.genai_client,
        "generate_json",
        lambda prompt, cfg=None: [{"type": "warning", "message": "Rent is high", "detail": "40% of income"}] * 6,
    )
    out = advisor.generate_insights(ROWS, ACCOUNTS, now=NOW)
    assert out["source"] == "model"
    assert len(out["insights"]) == 4
    assert out["insights"][0]["type"] == "warning"


def test_cache_ttls_follow_reloaded_config(tmp_path, monkeypatch):
    from src.core.tax_agent import get_tax_cache
    from src.rythmiq.config import get_config

    assert forecast_agent.get_forecast_cache().ttl_s == 6 * 3600
    assert get_tax_cache().ttl_s == 24 * 3600

    cfg_path = tmp_path / "rythmiq.yaml"
    cfg_path.write_text("rythmiq:\n  cache:\n    forecast_ttl_hours: 1\n    tax_estimate_ttl_hours: 2\n")
    monkeypatch.setenv("RYTHMIQ_CONFIG", str(cfg_path))
    get_config.cache_clear()
    forecast_agent.get_forecast_cache.cache_clear()
    get_tax_cache.cache_clear()

    assert forecast_agent.get_forecast_cache().ttl_s == 3600
    assert get_tax_cache().ttl_s == 2 * 3600
