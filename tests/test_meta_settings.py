import pytest

from teamdesk.meta_settings import (
    REPORT_WEBHOOK_KEY,
    TASK_WEBHOOK_KEY,
    _set_meta_value,
    get_webhook_setting,
    toggle_webhook,
    update_webhook_setting,
)


def test_missing_setting_falls_back_to_enabled_default(db):
    cfg = get_webhook_setting(db, TASK_WEBHOOK_KEY)

    assert cfg.enabled is True
    assert cfg.url == "https://hooks.example.test/tasks"
    assert cfg.description == "Task webhook notifications"
    assert cfg.updated_at is None


def test_update_keeps_current_url_when_none_given(db):
    update_webhook_setting(db, key=REPORT_WEBHOOK_KEY, enabled=True, url="https://n8n.example.test/report")

    cfg = update_webhook_setting(db, key=REPORT_WEBHOOK_KEY, enabled=False)

    assert cfg is not None
    assert cfg.enabled is False
    assert cfg.url == "https://n8n.example.test/report"
    assert get_webhook_setting(db, REPORT_WEBHOOK_KEY).url == "https://n8n.example.test/report"


def test_toggle_flips_enabled_flag(db):
    assert toggle_webhook(db, key=TASK_WEBHOOK_KEY, enabled=False) is True
    assert get_webhook_setting(db, TASK_WEBHOOK_KEY).enabled is False

    assert toggle_webhook(db, key=TASK_WEBHOOK_KEY, enabled=True) is True
    assert get_webhook_setting(db, TASK_WEBHOOK_KEY).enabled is True


def test_unreadable_value_falls_back_to_default(db):
    _set_meta_value(db, TASK_WEBHOOK_KEY, "not json")
    db.commit()

    cfg = get_webhook_setting(db, TASK_WEBHOOK_KEY)

    assert cfg.enabled is True
    assert cfg.url == "https://hooks.example.test/tasks"


def test_unknown_key_is_rejected(db):
    with pytest.raises(ValueError, match="Unknown webhook setting"):
        get_webhook_setting(db, "slack")
