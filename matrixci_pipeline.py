# matrixci_pipeline.py
# Python form of pipelines/macos.yml, plus a Linux target.
from __future__ import annotations

from matrixci.dsl import axis, on, pipeline

PIPELINE = pipeline(
    "CI (local)",
    axis("version", ["stable", "beta", "nightly"]),
    axis("target", ["x86_64-unknown-linux-gnu"]),
    os_id="Linux",
    runs_on="ubuntu-latest",
    fail_fast=False,
    trigger=on(pull_request=["opened", "synchronize", "reopened"], push=["master"]),
)
