"""Nox sessions for the notification router test suite and quality gates."""

import nox

PYTHON_VERSIONS = ["3.14"]
SAMPLE_CONFIG = "config/notification-router.yaml"
SAMPLE_REQUESTS = "config/requests.example.yaml"

nox.options.sessions = ["tests", "lint", "typecheck"]


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run the full suite with coverage.

    Args:
        session: The nox session object.
    """
    session.run("uv", "sync", "--extra", "test", external=True)
    session.run(
        "pytest",
        "--cov=notification_router",
        "--cov-report=term-missing:skip-covered",
        "--cov-fail-under=80",
        *session.posargs,
    )


@nox.session(python=PYTHON_VERSIONS)
def fast(session: nox.Session) -> None:
    """Run unit and property tests, skipping anything that waits on real timers."""
    session.run("uv", "sync", "--extra", "test", external=True)
    session.run("pytest", "tests/unit", "tests/property", "-m", "not slow", *session.posargs)


@nox.session(python=PYTHON_VERSIONS)
def integration(session: nox.Session) -> None:
    """Run the engine wiring tests only."""
    session.run("uv", "sync", "--extra", "test", external=True)
    session.run("pytest", "-m", "integration", *session.posargs)


@nox.session(python=PYTHON_VERSIONS)
def smoke(session: nox.Session) -> None:
    """Run the sample workload through the command-line runner.

    Args:
        session: The nox session object.
    """
    session.run("uv", "sync", external=True)
    session.run(
        "notification-router",
        "--config",
        SAMPLE_CONFIG,
        "--requests",
        SAMPLE_REQUESTS,
        "--no-syslog",
        "--linger",
        "5",
    )


@nox.session(python=PYTHON_VERSIONS)
def lint(session: nox.Session) -> None:
    """Run ruff linting and formatting checks."""
    session.run("uv", "sync", "--extra", "dev", external=True)
    session.run("ruff", "check", ".")
    session.run("ruff", "format", "--check", ".")


@nox.session(python=PYTHON_VERSIONS)
def typecheck(session: nox.Session) -> None:
    """Run basedpyright over sources and tests."""
    session.run("uv", "sync", "--extra", "test", external=True)
    session.run("uvx", "basedpyright@latest", external=True)


@nox.session(python=PYTHON_VERSIONS)
def format(session: nox.Session) -> None:
    """Auto-format code with ruff."""
    session.run("uv", "sync", "--extra", "dev", external=True)
    session.run("ruff", "check", ".", "--fix")
    session.run("ruff", "format", ".")
