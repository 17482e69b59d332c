"""Release information."""

RELEASE = "1.25.2-dev"
GIT_HASH = ""


def is_development_release(release: str = RELEASE) -> bool:
    return "-dev" in release