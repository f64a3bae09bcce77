from jobengine.settings import Settings, get_settings, settings


def test_settings_singleton_is_cached():
    assert get_settings() is get_settings()
    assert get_settings() is settings


def test_defaults():
    fresh = Settings()
    assert fresh.RETRY_DELAYS_SECONDS == (5, 30, 300)
    assert fresh.CRON_MAX_CONSECUTIVE_FAILURES == 5
    assert fresh.STALE_JOB_TIMEOUT_SECONDS == 600
    assert fresh.SYSTEM_TENANT_ID == "system"
