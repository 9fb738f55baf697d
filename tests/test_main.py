from application_logger import main as cli
from application_logger.errors import RunLeaseError
from application_logger.settings import Settings


def _settings():
    return Settings(app={"timezone": "UTC"})


def test_live_lease_aborts_run(monkeypatch):
    monkeypatch.setattr(cli, "load_settings", lambda path=None: _settings())

    def busy(ttl_s, path=None, now=None):
        raise RunLeaseError("abc", "2025-06-01T12:10:00+00:00")

    called = []
    monkeypatch.setattr(cli, "acquire_run_lease", busy)
    monkeypatch.setattr(cli, "run_applications", lambda cfg, dry_run=False: called.append(True))
    assert cli.main(["process"]) == 2
    assert called == []


def test_lease_released_after_run(monkeypatch):
    monkeypatch.setattr(cli, "load_settings", lambda path=None: _settings())
    monkeypatch.setattr(cli, "acquire_run_lease", lambda ttl_s, path=None, now=None: "run-1")
    released, ran = [], []
    monkeypatch.setattr(cli, "release_run_lease", lambda run_id, path=None: released.append(run_id))
    monkeypatch.setattr(cli, "run_stale_sweep", lambda cfg, dry_run=False, weeks=None: ran.append(weeks) or 0)
    assert cli.main(["stale", "--weeks", "3"]) == 0
    assert ran == [3]
    assert released == ["run-1"]


def test_dry_run_skips_the_lease(monkeypatch):
    monkeypatch.setattr(cli, "load_settings", lambda path=None: _settings())
    monkeypatch.setattr(cli, "acquire_run_lease", lambda *a, **k: (_ for _ in ()).throw(AssertionError("no lease")))
    seen = []
    monkeypatch.setattr(cli, "refresh_dashboard", lambda cfg, dry_run=False: seen.append(dry_run))
    assert cli.main(["dashboard", "--dry-run"]) == 0
    assert seen == [True]
