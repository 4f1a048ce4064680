"""End-to-end tests for Job discovery and execution."""

import signal
import threading

import pytest

from steprun.config import ConfigError
from steprun.job import Job, StatusReporter
from steprun.step import Status, StepSpawnError


def _job(step_dir, store, **kwargs):
    return Job("test-job", directory=step_dir, store=store, quiet=True, **kwargs)


class TestJobDiscover:
    """Tests for Job.discover."""

    def test_discover_groups(self, step_dir, store, make_script):
        for name in ("001_a.sh", "001_b.sh", "002_c.sh"):
            make_script(step_dir, name)

        groups = _job(step_dir, store).discover()

        assert [[s.name for s in g] for g in groups] == [["001_a", "001_b"], ["002_c"]]
        assert [s.id for g in groups for s in g] == [1, 2, 3]

    def test_both_sources_rejected(self, step_dir, store):
        job = Job("x", directory=step_dir, command="true", store=store)
        with pytest.raises(ConfigError):
            job.run()
        assert store.calls == []


class TestJobRun:
    """Tests for Job.run."""

    def test_stops_at_first_failing_group(self, step_dir, store, make_script):
        make_script(step_dir, "001_ok.sh", "exit 0")
        make_script(step_dir, "002_fail.sh", "echo broken; exit 1")
        make_script(step_dir, "003_x.sh", "exit 0")
        job = _job(step_dir, store)

        status = job.run()

        assert status == Status.ERROR
        assert job.status == Status.ERROR
        assert [g.status() for g in job.groups[:2]] == [Status.OK, Status.ERROR]
        never_run = job.groups[2].steps[0]
        assert never_run.status == Status.PENDING
        assert never_run.pid is None
        assert [s.name for s in job.failed_steps] == ["002_fail"]
        assert "broken" in job.failed_steps[0].log
        assert job.failed_steps[0].exit_code == 1

    def test_failed_run_duration_excludes_later_groups(self, step_dir, store, make_script):
        make_script(step_dir, "001_ok.sh", "exit 0")
        make_script(step_dir, "002_fail.sh", "exit 1")
        make_script(step_dir, "003_slow.sh", "sleep 1")
        job = _job(step_dir, store)

        job.run()

        assert job.groups[2].steps[0].status == Status.PENDING
        assert 0 <= job.duration_ms < 1000
        finish = [args for name, args in store.calls if name == "finish_job"]
        assert finish[0][1:] == ("error", job.duration_ms / 1000)

    def test_parallel_group(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh", "sleep 0.5")
        make_script(step_dir, "001_b.sh", "sleep 0.5")
        job = _job(step_dir, store)

        status = job.run()

        assert status == Status.OK
        assert len(job.groups) == 1
        assert len(job.groups[0]) == 2
        for step in job.steps:
            assert step.status == Status.OK
            assert step.duration is not None
            assert step.started is not None
        # Ran concurrently, not one after the other
        assert job.duration_ms < 950

    def test_simultaneous_exits_all_reaped(self, step_dir, store, make_script):
        for name in ("001_a.sh", "001_b.sh", "001_c.sh", "001_d.sh"):
            make_script(step_dir, name, "exit 0")
        job = _job(step_dir, store)

        assert job.run() == Status.OK
        assert all(s.status == Status.OK for s in job.steps)

    def test_sibling_completes_when_one_fails(self, step_dir, store, make_script):
        make_script(step_dir, "001_fail.sh", "exit 3")
        make_script(step_dir, "001_slow.sh", "sleep 0.1")
        make_script(step_dir, "002_next.sh")
        job = _job(step_dir, store)

        assert job.run() == Status.ERROR
        fail, slow = job.groups[0].steps
        assert fail.exit_code == 3
        assert slow.status == Status.OK
        assert job.groups[1].steps[0].status == Status.PENDING

    def test_pids_match_steps(self, step_dir, store, make_script):
        make_script(step_dir, "001_slow.sh", "sleep 0.2; exit 4")
        make_script(step_dir, "001_fast.sh", "exit 0")
        job = _job(step_dir, store)

        job.run()

        by_name = {s.name: s for s in job.steps}
        assert by_name["001_fast"].status == Status.OK
        assert by_name["001_slow"].exit_code == 4
        assert by_name["001_fast"].pid != by_name["001_slow"].pid

    def test_store_calls_in_lifecycle_order(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh")
        make_script(step_dir, "002_b.sh")
        job = _job(step_dir, store)

        job.run()

        kinds = [call[0] for call in store.calls]
        assert kinds == [
            "create_job",
            "create_step",
            "create_step",
            "start_step",
            "finish_step",
            "start_step",
            "finish_step",
            "finish_job",
        ]
        assert store.calls[0][1][4] == "running"
        assert store.calls[-1][1][1] == "ok"

    def test_samples_long_enough_step(self, step_dir, store, make_script):
        make_script(step_dir, "001_busy.sh", "i=0; while [ $i -lt 20000 ]; do i=$((i+1)); done")
        job = _job(step_dir, store)

        job.run()

        step = job.steps[0]
        assert len(step.sampler.cpu_series) >= 2
        assert step.current_cpu_usage() >= 0

    def test_single_command(self, tmp_path, store, make_script):
        script = make_script(tmp_path, "001_only.sh", 'echo "got $1"')
        job = Job("cmd", command=f"{script} --flag=1", store=store, quiet=True)

        assert job.run() == Status.OK
        assert len(job.steps) == 1
        assert job.steps[0].id == 1
        assert "got --flag=1" in job.steps[0].log

    def test_spawn_failure_is_raised(self, step_dir, store, make_script):
        path = make_script(step_dir, "001_bad.sh")
        path.chmod(0o644)
        job = _job(step_dir, store)

        with pytest.raises(StepSpawnError):
            job.run()

        assert job.status == Status.ERROR
        assert store.calls[-1] == ("finish_job", (0, "error", job.duration))

    def test_restores_sigchld_handler(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh")
        before = signal.getsignal(signal.SIGCHLD)

        _job(step_dir, store).run()

        assert signal.getsignal(signal.SIGCHLD) == before

    def test_runs_off_main_thread(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh", "exit 0")
        make_script(step_dir, "001_b.sh", "exit 1")
        job = _job(step_dir, store)
        result = {}

        thread = threading.Thread(target=lambda: result.setdefault("status", job.run()))
        thread.start()
        thread.join(timeout=10)

        assert result["status"] == Status.ERROR
        assert {s.name: s.status for s in job.steps} == {
            "001_a": Status.OK,
            "001_b": Status.ERROR,
        }

    def test_reporter_renders_while_running(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh", "sleep 0.3")
        renders = []
        job = Job(
            "test-job",
            directory=step_dir,
            store=store,
            render=lambda j: renders.append(j.status),
            report_interval=0.05,
        )

        job.run()

        assert Status.RUNNING in renders

    def test_quiet_suppresses_reporter(self, step_dir, store, make_script):
        make_script(step_dir, "001_a.sh", "sleep 0.1")
        renders = []
        job = _job(step_dir, store, render=renders.append, report_interval=0.01)

        job.run()

        assert renders == []


class TestStatusReporter:
    """Tests for StatusReporter."""

    def test_stop_without_render(self):
        calls = []
        reporter = StatusReporter(lambda: calls.append(1), interval=10)
        reporter.start()
        reporter.stop()
        assert calls == []
