import dataclasses
import threading
import time

import pytest

from shipyard.config import FailurePolicy
from shipyard.dsl import job, sh
from shipyard.model import (
    CANCELLED,
    FAILURE,
    RUN_CANCELLED,
    RUN_FAILED,
    RUN_SUCCESS,
    RUNNING,
    SKIPPED,
    SUCCESS,
    Job,
    JobResult,
    Step,
    TriggerEvent,
    Triggers,
    Workflow,
)
from shipyard.scheduler import Run, Scheduler, _final_status

from conftest import RecordingSink, run_in_thread, wait_until


def make_scheduler(config, **changes):
    return Scheduler(dataclasses.replace(config, **changes), report_sink=RecordingSink())


def statuses(result):
    return {j.name: j.status for j in result.jobs}


def test_failed_tests_skip_build_but_not_lint(scheduler, sink, push_main, workspace):
    jobs = [
        job("tests", sh("pytest", "exit 1")),
        job("lint", sh("ruff", "touch linted")),
        job("build", sh("build", "touch built"), needs=["tests"]),
    ]
    result = scheduler.run(push_main, jobs)

    assert result.status == RUN_FAILED
    assert result.exit_code == 1
    assert statuses(result) == {"tests": FAILURE, "lint": SUCCESS, "build": SKIPPED}
    assert result.job("build").reason == "dependency 'tests' failure"
    assert result.job("tests").exit_codes == [1]
    assert (workspace / "linted").exists()
    assert not (workspace / "built").exists()
    assert sink.results == [result]


def test_results_are_in_declaration_order(scheduler, push_main):
    jobs = [job("b", sh("x", "true"), needs=["a"]), job("a", sh("x", "true"))]
    result = scheduler.run(push_main, jobs)
    assert [j.name for j in result.jobs] == ["b", "a"]
    assert result.status == RUN_SUCCESS
    assert result.exit_code == 0


def test_skips_are_transitive(scheduler, push_main):
    jobs = [
        job("a", sh("x", "false")),
        job("b", sh("x", "true"), needs=["a"]),
        job("c", sh("x", "true"), needs=["b"]),
    ]
    result = scheduler.run(push_main, jobs)
    assert statuses(result) == {"a": FAILURE, "b": SKIPPED, "c": SKIPPED}
    assert result.job("c").reason == "dependency 'b' skipped"


def test_optional_job_failure_does_not_fail_run(scheduler, push_main):
    jobs = [
        job("tests", sh("x", "true")),
        job("docs", sh("x", "false"), required=False),
        job("publish-docs", sh("x", "true"), needs=["docs"]),
    ]
    result = scheduler.run(push_main, jobs)
    assert result.status == RUN_SUCCESS
    assert statuses(result) == {"tests": SUCCESS, "docs": FAILURE, "publish-docs": SKIPPED}


def test_cycle_aborts_before_any_job_starts(scheduler, sink, push_main, workspace):
    jobs = [
        job("a", sh("x", "touch a"), needs=["b"]),
        job("b", sh("x", "touch b"), needs=["a"]),
        job("c", sh("x", "touch c")),
    ]
    result = scheduler.run(push_main, jobs)
    assert result.status == RUN_FAILED
    assert result.error.startswith("CyclicDependency")
    assert statuses(result) == {"a": SKIPPED, "b": SKIPPED, "c": SKIPPED}
    assert {j.reason for j in result.jobs} == {"configuration error"}
    assert list(workspace.iterdir()) == []
    assert sink.results == [result]


def test_missing_dependency_aborts_run(scheduler, push_main):
    result = scheduler.run(push_main, [job("build", sh("x", "true"), needs=["tests"])])
    assert result.status == RUN_FAILED
    assert "missing job 'tests'" in result.error


def test_job_without_steps_aborts_run(scheduler, push_main):
    result = scheduler.run(push_main, [Job(name="empty", steps=[])])
    assert result.status == RUN_FAILED
    assert "has no steps" in result.error


def test_unknown_cache_placeholder_aborts_run(scheduler, push_main):
    step = Step(name="s", run="true", cache_key="deps-{branch}")
    result = scheduler.run(push_main, [Job(name="x", steps=[step])])
    assert result.status == RUN_FAILED
    assert "unknown placeholder" in result.error


def test_ready_jobs_dispatch_by_stage_then_declaration_order(config, push_main, workspace):
    scheduler = make_scheduler(config, max_concurrency=1)
    jobs = [
        job("d", sh("x", "echo d >> order.txt"), needs=["b"]),
        job("b", sh("x", "echo b >> order.txt")),
        job("a", sh("x", "echo a >> order.txt")),
        job("c", sh("x", "echo c >> order.txt")),
    ]
    result = scheduler.run(push_main, jobs)
    assert result.status == RUN_SUCCESS
    assert (workspace / "order.txt").read_text().split() == ["b", "a", "c", "d"]


def test_concurrency_limit_is_respected(config, push_main):
    running = set()
    peak = []
    lock = threading.Lock()

    def on_status(_run_id, name, status):
        with lock:
            if status == RUNNING:
                running.add(name)
            else:
                running.discard(name)
            peak.append(len(running))

    scheduler = Scheduler(dataclasses.replace(config, max_concurrency=2), on_status=on_status)
    jobs = [job(f"j{i}", sh("x", "sleep 0.3")) for i in range(4)]
    started = time.monotonic()
    result = scheduler.run(push_main, jobs)
    elapsed = time.monotonic() - started

    assert result.status == RUN_SUCCESS
    assert max(peak) == 2
    assert elapsed >= 0.55


def test_continue_policy_runs_independent_jobs(config, push_main, workspace):
    scheduler = make_scheduler(config, max_concurrency=1, failure_policy=FailurePolicy.CONTINUE)
    jobs = [job("fail", sh("x", "false")), job("other", sh("x", "touch other"))]
    result = scheduler.run(push_main, jobs)
    assert statuses(result) == {"fail": FAILURE, "other": SUCCESS}
    assert result.status == RUN_FAILED


def test_cancel_pending_policy(config, push_main, workspace):
    scheduler = make_scheduler(config, max_concurrency=1, failure_policy="cancel_pending")
    jobs = [job("fail", sh("x", "false")), job("other", sh("x", "touch other"))]
    result = scheduler.run(push_main, jobs)
    assert statuses(result) == {"fail": FAILURE, "other": CANCELLED}
    assert result.job("other").reason == "cancelled after a required job failed"
    assert result.status == RUN_FAILED
    assert not (workspace / "other").exists()


def test_cancel_pending_ignores_optional_failures(config, push_main):
    scheduler = make_scheduler(config, max_concurrency=1, failure_policy="cancel_pending")
    jobs = [job("docs", sh("x", "false"), required=False), job("tests", sh("x", "true"))]
    result = scheduler.run(push_main, jobs)
    assert statuses(result) == {"docs": FAILURE, "tests": SUCCESS}
    assert result.status == RUN_SUCCESS


def test_cancel_all_policy_stops_running_jobs(config, push_main):
    scheduler = make_scheduler(config, max_concurrency=2, failure_policy=FailurePolicy.CANCEL_ALL)
    jobs = [
        job("fail", sh("x", "sleep 0.3; false")),
        job("long", sh("x", "sleep 30")),
    ]
    started = time.monotonic()
    result = scheduler.run(push_main, jobs)
    assert time.monotonic() - started < 15
    assert statuses(result) == {"fail": FAILURE, "long": CANCELLED}
    assert result.status == RUN_FAILED


def test_cancel_run_while_build_is_running(scheduler, push_main):
    jobs = [
        job("tests", sh("x", "true")),
        job("lint", sh("x", "true")),
        job("build", sh("x", "sleep 30"), needs=["tests"]),
    ]
    t, box = run_in_thread(scheduler.run, push_main, jobs, run_id="run-1")

    def build_running():
        run = scheduler.get_run("run-1")
        return run is not None and run.job_status("lint") == SUCCESS and run.job_status("build") == RUNNING

    assert wait_until(build_running)
    assert scheduler.cancel("run-1", "user request") is True
    t.join(15)
    assert not t.is_alive()

    result = box["result"]
    assert statuses(result) == {"tests": SUCCESS, "lint": SUCCESS, "build": CANCELLED}
    assert result.job("build").reason == "user request"
    assert result.status == RUN_CANCELLED
    assert result.exit_code == 1
    assert scheduler.get_run("run-1") is None


def test_cancel_unknown_run(scheduler):
    assert scheduler.cancel("nope") is False


def test_cancel_after_every_job_finished_keeps_success(push_main):
    jobs = [job("tests", sh("x", "true")), job("lint", sh("x", "true"))]
    run = Run("late", push_main, jobs)
    for j in jobs:
        run._finish(JobResult(name=j.name, status=SUCCESS))

    assert run.cancel("too late") is False
    assert run.cancel_requested is False
    assert not run.cancel_event.is_set()
    assert _final_status(run, run.results()) == RUN_SUCCESS


def test_cancel_with_a_job_still_queued_is_honoured(push_main):
    jobs = [job("tests", sh("x", "true")), job("build", sh("x", "true"), needs=["tests"])]
    run = Run("partial", push_main, jobs)
    run._finish(JobResult(name="tests", status=SUCCESS))

    assert run.cancel("user request") is True
    assert run.cancel_event.is_set()
    assert _final_status(run, run.results()) == RUN_CANCELLED


def test_cancelled_dependency_skips_dependents(scheduler, push_main):
    jobs = [
        job("build", sh("x", "sleep 30")),
        job("deploy", sh("x", "true"), needs=["build"]),
    ]
    t, box = run_in_thread(scheduler.run, push_main, jobs, run_id="run-2")
    assert wait_until(lambda: scheduler.get_run("run-2") is not None
                      and scheduler.get_run("run-2").job_status("build") == RUNNING)
    scheduler.cancel("run-2")
    t.join(15)
    result = box["result"]
    assert statuses(result) == {"build": CANCELLED, "deploy": SKIPPED}
    assert result.status == RUN_CANCELLED


def test_failure_wins_over_cancellation(scheduler, push_main):
    jobs = [
        job("tests", sh("x", "false")),
        job("build", sh("x", "sleep 30")),
    ]
    t, box = run_in_thread(scheduler.run, push_main, jobs, run_id="run-3")
    assert wait_until(lambda: scheduler.get_run("run-3") is not None
                      and scheduler.get_run("run-3").job_status("tests") == FAILURE)
    scheduler.cancel("run-3")
    t.join(15)
    result = box["result"]
    assert statuses(result) == {"tests": FAILURE, "build": CANCELLED}
    assert result.status == RUN_FAILED


def test_newer_run_supersedes_older_run_on_same_ref(scheduler):
    ref = TriggerEvent("push", "feature")
    t, box = run_in_thread(scheduler.run, ref, [job("build", sh("x", "sleep 30"))], run_id="old")
    assert wait_until(lambda: scheduler.get_run("old") is not None
                      and scheduler.get_run("old").job_status("build") == RUNNING)

    newer = scheduler.run(TriggerEvent("pull_request", "feature"), [job("build", sh("x", "true"))], run_id="new")
    t.join(15)

    assert newer.status == RUN_SUCCESS
    older = box["result"]
    assert older.status == RUN_CANCELLED
    assert older.job("build").reason == "superseded by run new"


def test_other_refs_are_not_superseded(scheduler):
    t, box = run_in_thread(
        scheduler.run, TriggerEvent("push", "a"), [job("build", sh("x", "sleep 30"))], run_id="on-a",
    )
    assert wait_until(lambda: scheduler.get_run("on-a") is not None
                      and scheduler.get_run("on-a").job_status("build") == RUNNING)
    other = scheduler.run(TriggerEvent("push", "b"), [job("x", sh("x", "true"))])
    assert other.status == RUN_SUCCESS
    assert scheduler.get_run("on-a") is not None

    scheduler.cancel("on-a")
    t.join(15)
    assert box["result"].status == RUN_CANCELLED


def test_supersession_can_be_disabled(config):
    scheduler = make_scheduler(config, cancel_superseded=False)
    ref = TriggerEvent("push", "main")
    t, box = run_in_thread(scheduler.run, ref, [job("build", sh("x", "sleep 0.5"))], run_id="first")
    assert wait_until(lambda: scheduler.get_run("first") is not None)
    scheduler.run(ref, [job("x", sh("x", "true"))])
    t.join(15)
    assert box["result"].status == RUN_SUCCESS


def test_duplicate_active_run_id_rejected(scheduler, push_main):
    t, _box = run_in_thread(scheduler.run, push_main, [job("x", sh("x", "sleep 30"))], run_id="dup")
    assert wait_until(lambda: scheduler.get_run("dup") is not None)
    with pytest.raises(ValueError):
        scheduler.run(TriggerEvent("push", "other"), [job("y", sh("x", "true"))], run_id="dup")
    scheduler.cancel("dup")
    t.join(15)


def test_shutdown_rejects_new_runs(scheduler, push_main):
    scheduler.shutdown()
    with pytest.raises(RuntimeError):
        scheduler.run(push_main, [job("x", sh("x", "true"))])


def test_report_sink_errors_do_not_break_run(config, push_main):
    class Broken:
        def emit(self, result):
            raise OSError("disk full")

    scheduler = Scheduler(config, report_sink=Broken())
    result = scheduler.run(push_main, [job("x", sh("x", "true"))])
    assert result.status == RUN_SUCCESS


def test_handle_event_filters_on_triggers(scheduler, sink):
    workflow = Workflow(
        name="ci",
        jobs=[job("env", sh("x", 'test "$GREETING" = hi'))],
        triggers=Triggers(events={"pull_request": [], "push": ["master"]}),
        env={"GREETING": "hi"},
    )
    assert scheduler.handle_event(workflow, TriggerEvent("push", "feature")) is None
    assert sink.results == []

    result = scheduler.handle_event(workflow, TriggerEvent("push", "refs/heads/master"))
    assert result.status == RUN_SUCCESS
    assert scheduler.handle_event(workflow, TriggerEvent("pull_request", "feature")).status == RUN_SUCCESS


def test_default_timeout_from_config(config, push_main):
    scheduler = make_scheduler(config, default_timeout=0.3)
    result = scheduler.run(push_main, [job("slow", sh("x", "sleep 30"))])
    assert result.status == RUN_FAILED
    assert "timed out" in result.job("slow").error


def test_context_manager_drains_runs(config, push_main):
    with Scheduler(config) as scheduler:
        result = scheduler.run(push_main, [job("x", sh("x", "true"))])
    assert result.status == RUN_SUCCESS
    with pytest.raises(RuntimeError):
        scheduler.run(push_main, [job("x", sh("x", "true"))])
