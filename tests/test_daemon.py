from __future__ import annotations

from notesync.coordinator import RunOutcome, SyncState
from notesync.daemon import SyncDaemon
from notesync.errors import ExitCode


class _Coordinator:
    def __init__(self, *codes):
        self.codes = list(codes)
        self.calls = 0

    def run_once(self, *, force_full=False, probe=False):
        assert probe
        self.calls += 1
        code = self.codes.pop(0) if len(self.codes) > 1 else self.codes[0]
        state = SyncState.FAILED if code not in (ExitCode.OK, ExitCode.NOTHING_TO_DO) else SyncState.DONE
        return RunOutcome(state=state, exit_code=code)


def _daemon(coord, **kw):
    kw.setdefault("interval_s", 0)
    return SyncDaemon(coord, **kw)


def test_runs_requested_cycles():
    coord = _Coordinator(ExitCode.OK, ExitCode.NOTHING_TO_DO, ExitCode.ALREADY_RUNNING)
    assert _daemon(coord).run(max_cycles=3) == 0
    assert coord.calls == 3


def test_integrity_failure_stops_immediately():
    coord = _Coordinator(ExitCode.OK, ExitCode.INTEGRITY_FAILURE, ExitCode.OK)
    assert _daemon(coord).run(max_cycles=10) == int(ExitCode.INTEGRITY_FAILURE)
    assert coord.calls == 2


def test_too_many_consecutive_failures():
    coord = _Coordinator(ExitCode.TRANSIENT_FAILURE)
    assert _daemon(coord, max_consecutive_errors=3).run(max_cycles=10) == int(ExitCode.TRANSIENT_FAILURE)
    assert coord.calls == 3


def test_success_resets_failure_count():
    coord = _Coordinator(
        ExitCode.TRANSIENT_FAILURE, ExitCode.TRANSIENT_FAILURE, ExitCode.OK,
        ExitCode.TRANSIENT_FAILURE, ExitCode.OK,
    )
    assert _daemon(coord, max_consecutive_errors=3).run(max_cycles=5) == 0
    assert coord.calls == 5


def test_shutdown_flag_file(tmp_path):
    flag = tmp_path / "notes_sync_shutdown"
    flag.write_text("", encoding="utf-8")
    coord = _Coordinator(ExitCode.OK)
    assert _daemon(coord, shutdown_flag=flag).run() == 0
    assert coord.calls == 0
    assert not flag.exists()


def test_stop_request_between_cycles():
    coord = _Coordinator(ExitCode.OK)
    daemon = _daemon(coord)

    real_run_once = coord.run_once

    def run_once(**kw):
        daemon.request_stop()
        return real_run_once(**kw)

    coord.run_once = run_once
    assert daemon.run() == 0
    assert coord.calls == 1


def test_sleep_shortened_only_after_productive_cycle():
    daemon = _daemon(_Coordinator(ExitCode.OK), interval_s=60)
    assert daemon.next_sleep(RunOutcome(exit_code=ExitCode.OK), 15.0) == 45.0
    assert daemon.next_sleep(RunOutcome(exit_code=ExitCode.OK), 90.0) == 0.0
    assert daemon.next_sleep(RunOutcome(exit_code=ExitCode.NOTHING_TO_DO), 15.0) == 60.0
    assert daemon.next_sleep(RunOutcome(exit_code=ExitCode.TRANSIENT_FAILURE), 15.0) == 60.0
