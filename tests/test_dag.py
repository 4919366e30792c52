import pytest

from shipyard.dag import build_dag, execution_order, find_cycle, topo_levels
from shipyard.dsl import job, sh
from shipyard.errors import ConfigurationError, CyclicDependency


def j(name, needs=None):
    return job(name, sh("noop", "true"), needs=needs)


def test_independent_jobs_form_one_ready_set_in_declaration_order():
    jobs = [j("tests"), j("lint"), j("security"), j("docs")]
    assert topo_levels(jobs) == [["tests", "lint", "security", "docs"]]


def test_build_after_tests():
    jobs = [j("tests"), j("lint"), j("build", ["tests"])]
    assert topo_levels(jobs) == [["tests", "lint"], ["build"]]


def test_diamond_keeps_declaration_order_within_sets():
    jobs = [
        j("deploy", ["b", "a"]),
        j("b", ["root"]),
        j("a", ["root"]),
        j("root"),
    ]
    assert topo_levels(jobs) == [["root"], ["b", "a"], ["deploy"]]


def test_every_job_follows_its_dependencies():
    jobs = [
        j("e", ["d", "b"]),
        j("a"),
        j("d", ["c"]),
        j("b", ["a"]),
        j("c", ["a", "b"]),
    ]
    levels = topo_levels(jobs)
    position = {name: i for i, level in enumerate(levels) for name in level}
    for jb in jobs:
        for need in jb.needs:
            assert position[need] < position[jb.name]
    assert sorted(execution_order(jobs)) == sorted(x.name for x in jobs)


def test_empty_job_set():
    assert topo_levels([]) == []


def test_repeated_dependency_counts_once():
    adj, indeg = build_dag([j("a"), j("b", ["a", "a"])])
    assert adj["a"] == ["b"]
    assert indeg["b"] == 1


def test_missing_dependency_is_configuration_error():
    with pytest.raises(ConfigurationError) as ei:
        topo_levels([j("build", ["tests"])])
    assert "missing job 'tests'" in ei.value.message
    assert ei.value.job == "build"


def test_duplicate_names_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        topo_levels([j("a"), j("a")])


def test_cycle_reports_offending_jobs():
    jobs = [j("x", ["z"]), j("y", ["x"]), j("z", ["y"]), j("ok")]
    with pytest.raises(CyclicDependency) as ei:
        topo_levels(jobs)
    cycle = ei.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"x", "y", "z"}
    assert "->" in str(ei.value)
    assert isinstance(ei.value, ConfigurationError)


def test_cycle_with_jobs_hanging_off_it():
    # "after" is stuck too, but is not part of the cycle
    jobs = [j("after", ["b"]), j("a", ["b"]), j("b", ["a"])]
    with pytest.raises(CyclicDependency) as ei:
        topo_levels(jobs)
    assert set(ei.value.cycle) == {"a", "b"}
    assert "after" in ei.value.details["stuck"]


def test_self_loop():
    with pytest.raises(CyclicDependency) as ei:
        topo_levels([j("a", ["a"])])
    assert ei.value.cycle == ["a", "a"]


def test_find_cycle_without_cycle():
    assert find_cycle({"a": ["b"], "b": []}, ["a", "b"]) == []
