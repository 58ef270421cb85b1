"""Password strength rules for signup and admin password resets."""

import re

MIN_PASSWORD_LENGTH = 8
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

_RULES: list[tuple[str, str]] = [
    (r"[A-Z]", "one uppercase letter"),
    (r"[a-z]", "one lowercase letter"),
    (r"\d", "one number"),
    ("[" + re.escape(SPECIAL_CHARACTERS) + "]", "one special character"),
]


def password_problems(password: str) -> list[str]:
    """
    List the strength rules a password fails.

    Returns:
        Empty list when the password is strong enough
    """
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    for pattern, description in _RULES:
        if not re.search(pattern, password):
            problems.append(description)
    return problems


def is_strong_password(password: str) -> bool:
    return not password_problems(password)
