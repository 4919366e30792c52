# shipyard_workflow.py
# Pull request pipeline for shipyard itself: tests, lint, build, security audit, docs.
from __future__ import annotations

from shipyard.dsl import wf, job, sh

NAME = "Pull Request"

TRIGGERS = {
    "pull_request": None,
    "push": {"branches": ["master", "main"]},
}

ENV = {"PYTHONDONTWRITEBYTECODE": "1"}

# Reusable setup: the resolved dependency tree, keyed on the packaging file
install = sh(
    "Install dependencies",
    "python -m pip install --cache-dir .pip-cache -e '.[test]'",
    cache_key="pip-{os}-{hash:pyproject.toml}",
    cache_paths=[".pip-cache"],
)


def workflow():
    return wf(
        job(
            "tests",
            install,
            sh("Run tests", "python -m pytest -q"),
        ),
        job(
            "lint",
            sh("Ruff format check", "ruff format --check ."),
            sh("Ruff check", "ruff check ."),
        ),
        job(
            "build",
            sh("Build sdist and wheel", "python -m build --outdir dist/"),
        ),
        job(
            "security",
            sh("Install pip-audit", "python -m pip install pip-audit"),
            sh("Run pip-audit", "pip-audit"),
        ),
        job(
            "docs",
            sh("Check README", "test -f README.md"),
            required=False,
        ),
    )
