# gateci_workflow.py
# CI for a Rust crate: formatting + clippy, then the test suite.
from __future__ import annotations
from gateci import wf, job, sh, on, toolchain, use_cache

RUST_TOOLCHAIN = "stable"
TOOLCHAIN_PROFILE = "minimal"

IGNORE_DOCS = ["**.md"]
ENV = {"RUST_TOOLCHAIN": RUST_TOOLCHAIN, "TOOLCHAIN_PROFILE": TOOLCHAIN_PROFILE}


def workflow():
    return wf(
        job(
            "lint",
            use_cache(),
            sh("Run cargo fmt", "cargo fmt --all -- --check"),
            sh("Run cargo clippy", "cargo clippy -- -D warnings"),
            toolchain=toolchain(RUST_TOOLCHAIN, profile=TOOLCHAIN_PROFILE, components=["rustfmt", "clippy"]),
            env=ENV,
        ),
        job(
            "test",
            use_cache(),
            sh("Run cargo test with --no-run (compile tests)", "cargo test --no-run"),
            sh("Run cargo test", "cargo test --all-features", env={"RUST_TEST_THREADS": 1}),
            toolchain=toolchain(RUST_TOOLCHAIN, profile=TOOLCHAIN_PROFILE),
            env=ENV,
        ),
        name="CI",
        triggers=[
            on("push", paths_ignore=IGNORE_DOCS),
            on("pull_request", paths_ignore=IGNORE_DOCS),
            on("workflow_dispatch"),
        ],
    )
