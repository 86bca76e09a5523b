"""Actionable error catalog for ephemeraldb."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "docker_unavailable": {
        "what": "Docker CLI is not available: {detail}",
        "next": "Install Docker and make sure the daemon is running for the current user.",
    },
    "container_start_failed": {
        "what": "Container '{name}' could not be started from {image}.",
        "next": "Check that the image exists locally or can be pulled, then inspect `docker logs {name}`.",
    },
    "startup_timeout": {
        "what": "Container '{name}' did not become ready within {timeout}s.",
        "next": "Inspect `docker logs {name}` or raise `startup_timeout` in the configuration.",
    },
    "provisioning_failed": {
        "what": "Database '{database}' could not be provisioned: {detail}",
        "next": "Check that the name is unused and the admin login has CREATE DATABASE rights.",
    },
    "teardown_failed": {
        "what": "Database '{database}' could not be dropped: {detail}",
        "next": "Drop it manually or run `ephemeraldb prune` before the next test run.",
    },
    "fixture_already_set_up": {
        "what": "Fixture for database '{database}' was already set up.",
        "next": "Create a new fixture instance for every database a test needs.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
