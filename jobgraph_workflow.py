# jobgraph_workflow.py
# Workflow for jobgraph itself: lint, a test matrix, packaging and a gated publish.
from __future__ import annotations

from jobgraph import concurrency, download, job, matrix, sh, upload, wf


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
            sh("Ruff format check", "ruff format --check src tests || echo 'ruff not available, skipping'"),
        ),

        # Test job - one instance per Python version
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["lint"],
            strategy=matrix(python=["3.11", "3.12"], fail_fast=False),
        ),

        # Build job - produces the wheel and records its version
        job(
            "build",
            sh(
                "Read version",
                'python -c "import importlib.metadata as m; print(\'version=\' + m.version(\'jobgraph\'))" >> "$GITHUB_OUTPUT"',
                id="version",
            ),
            sh("Build wheel", "python -m pip wheel . --no-deps -w dist"),
            upload("Upload wheel", "dist", "dist"),
            needs=["test"],
            outputs={"version": "${{ steps.version.outputs.version }}"},
        ),

        # Publish job - only from main, one publish at a time
        job(
            "publish",
            download("Fetch wheel", "dist", "publish/dist"),
            sh("Show release", "ls publish/dist && echo 'publishing jobgraph ${{ needs.build.outputs.version }}'"),
            needs=["build"],
            if_="github.ref == 'refs/heads/main'",
            concurrency=concurrency("publish-${{ github.repository }}"),
        ),

        # Report job - runs whatever happened upstream
        job(
            "report",
            sh("Summary", "echo 'build: ${{ needs.build.result }}, publish: ${{ needs.publish.result }}'"),
            needs=["build", "publish"],
            if_="always()",
        ),
        name="jobgraph-ci",
        env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
    )
