# stepflow_workflow.py
# Workflow for stepflow itself: lint, a test matrix, and a packaged artifact
from __future__ import annotations

from stepflow import job, matrix, on, sh, uses, wf


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests", continue_on_error=True),
        ),

        # Test job - one instance per python version
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            max_parallel=2,
        ),

        # Build job - publishes the version for later jobs
        job(
            "build",
            sh("Version", "echo \"::set-output name=version::$(git describe --tags --always)\"", id="version"),
            sh("Build sdist", "python3 -m pip wheel --no-deps -w dist ."),
            uses("Upload dist", "upload-artifact", with_={"name": "dist", "path": "dist"}),
            needs=["test"],
            outputs={"version": "steps.version.outputs.version"},
        ),

        # Runs even when something above failed
        job(
            "report",
            sh("Summary", "echo 'build ${{ needs.build.result }}'"),
            needs=["build"],
            if_="always()",
        ),
        name="stepflow-ci",
        env={"PYTHONDONTWRITEBYTECODE": "1"},
        triggers=[on("push", branches=["main", "release/*"]), on("pull_request")],
    )
