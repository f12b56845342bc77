def test_imports():
    import copychu  # noqa: F401

    from copychu import (  # noqa: F401
        EventHub,
        QuotaGuard,
        RunManager,
        RunStatus,
        Scheduler,
        StageSupervisor,
        create_app,
        track_call,
    )
    from copychu.runtime import current_services, install_services  # noqa: F401
    from copychu.tools import can_proceed, remaining_calls, summary  # noqa: F401


def test_default_settings():
    from copychu.config.config import AppSettings

    settings = AppSettings()
    pipeline = settings.pipelines["copychu"]
    assert pipeline.stage_names() == ["phase0", "phase1", "phase2", "phase3", "phase4"]
    assert pipeline.get_stage("phase2").command == ["node", "phase2-ai-generate.js"]
    assert settings.quota.daily_limit == 1500
    assert settings.quota.warning_thresholds == [1000, 1500]


def test_settings_from_environment(monkeypatch, tmp_path):
    from copychu.config.config import AppSettings

    monkeypatch.setenv("COPYCHU_QUOTA__DAILY_LIMIT", "2000")
    monkeypatch.setenv("COPYCHU_SUPERVISOR__IDLE_TIMEOUT_S", "0")
    monkeypatch.setenv("COPYCHU_WORKSPACE", str(tmp_path))

    settings = AppSettings()
    assert settings.quota.daily_limit == 2000
    assert settings.supervisor.idle_timeout_s == 0
    assert settings.quota_path() == tmp_path.resolve() / "quota" / "gemini-api-stats.json"
