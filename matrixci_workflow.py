# matrixci_workflow.py
# Lint, cross-arch build/test matrices, OS-specific integration setup and a
# single status gate for merge automation.
from __future__ import annotations

from matrixci import all_of, always, gate, job, on_event, runner_arch, runner_os, sh, success, uses, wf

ARCHES = [
    "x86_64-unknown-linux-gnu",
    "aarch64-unknown-linux-gnu",
    "armv7-unknown-linux-gnueabi",
    "riscv64gc-unknown-linux-gnu",
]


def workflow():
    return wf(
        job(
            "lint",
            uses("actions/checkout@v4"),
            sh("Check formatting", "cargo fmt --all -- --check"),
            sh("Run clippy", "cargo hack clippy --all-targets --feature-powerset --workspace -- --deny warnings"),
            sh("Check public API", "cargo xtask public-api"),
            runs_on="ubuntu-22.04",
        ),

        job(
            "build-test",
            uses("actions/checkout@v4"),
            sh("Build", "cargo hack build --all-targets --feature-powerset --target $MATRIX_ARCH --workspace"),
            sh("Test", "cargo hack test --all-targets --feature-powerset --workspace", env={"RUST_BACKTRACE": "full"}),
            needs=["lint"],
            matrix={"arch": ARCHES},
            fail_fast=False,
            runs_on="ubuntu-22.04",
        ),

        job(
            "build-bpf",
            sh(
                "Build",
                "CARGO_CFG_BPF_TARGET_ARCH=$MATRIX_ARCH cargo hack build --package aya-bpf --feature-powerset --target $MATRIX_TARGET -Z build-std=core",
            ),
            needs=["lint"],
            matrix={
                "arch": ["x86_64", "aarch64", "arm", "riscv64"],
                "target": ["bpfel-unknown-none", "bpfeb-unknown-none"],
            },
            fail_fast=False,
            runs_on="ubuntu-22.04",
        ),

        job(
            "integration-test",
            uses("actions/checkout@v4", with_={"submodules": "recursive"}),
            sh("Install prerequisites", "sudo apt -y install clang gcc-multilib llvm qemu-system-x86", id="prereqs-linux", when=runner_os("linux")),
            sh("Install prerequisites", "brew install dpkg findutils gnu-tar llvm pkg-config qemu", id="prereqs-macos", when=runner_os("macos")),
            sh("Download kernels", "./scripts/fetch-kernels.sh arm64", id="kernels-arm64", when=runner_arch("arm64")),
            sh("Download kernels", "./scripts/fetch-kernels.sh amd64", id="kernels-amd64", when=runner_arch("x64")),
            sh("Run local integration tests", "cargo xtask integration-test local", when=runner_os("linux")),
            sh("Run virtualized integration tests", "find test/.tmp -name 'vmlinuz-*' | xargs -t cargo xtask integration-test vm"),
            sh("Collect logs", "tar czf integration-logs.tgz test/.tmp/logs || true", when=always()),
            needs=["build-test", "build-bpf"],
            matrix={"runner": ["macos-12", "ubuntu-22.04"]},
            fail_fast=False,
            runs_on="{runner}",
        ),

        job(
            "nightly-miri",
            sh("Run miri", "cargo hack miri test --all-targets --feature-powerset --workspace"),
            needs=["lint"],
            when=all_of(success(), on_event("schedule")),
            runs_on="ubuntu-22.04",
        ),

        # One status check for the whole workflow, for merge automation.
        gate("build-workflow-complete", needs=["lint", "build-test", "build-bpf", "integration-test"]),
        name="ci",
        on=["push", "pull_request", "schedule"],
        env={"CARGO_TERM_COLOR": "always"},
    )
