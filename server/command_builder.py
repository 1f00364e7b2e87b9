"""Compose the shell command line sent to the remote host."""

import re

POSIX_LOCALE = "C"

# Characters that keep their meaning inside POSIX double quotes
_DOUBLE_QUOTE_SPECIAL = re.compile(r'([\\"$`])')


def quote_path(path: str) -> str:
    """
    Quote a path for a POSIX shell using double quotes.

    A leading ``~`` or ``~/`` stays outside the quotes so the remote shell
    still expands it to the login user's home directory.
    """
    if path == "~":
        return "~"
    prefix = ""
    if path.startswith("~/"):
        prefix, path = "~/", path[2:]
    escaped = _DOUBLE_QUOTE_SPECIAL.sub(r"\\\1", path)
    return f'{prefix}"{escaped}"'


def locale_prefix(lang: str = "", lc_all: str = "") -> str:
    """Return an ``env`` wrapper pinning the remote locale, or ``""`` when unset."""
    if not (lang or lc_all):
        return ""
    return f"env LANG={lang or POSIX_LOCALE} LC_ALL={lc_all or POSIX_LOCALE}"


def build_command(command: str, cwd: str | None = None, lang: str = "", lc_all: str = "") -> str:
    """
    Build the final command string.

    Examples:
        build_command("ls", "/tmp") -> 'cd "/tmp" && ls'
        build_command("ls", "/tmp", lang="en_US.UTF-8")
            -> 'cd "/tmp" && env LANG=en_US.UTF-8 LC_ALL=C ls'
    """
    prefix = locale_prefix(lang, lc_all)
    base = f"{prefix} {command}" if prefix else command
    if cwd:
        return f"cd {quote_path(cwd)} && {base}"
    return base
