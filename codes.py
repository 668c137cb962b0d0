"""Human-readable record codes (class codes, exam codes, payment ids)."""

import secrets


def generate_unique_code(prefix, digit_count, exists, rng=None):
    """Return prefix + digit_count random digits that ``exists`` reports as unused.

    ``exists`` is called with each candidate code; ``rng`` is any object with
    ``randint`` (a seeded ``random.Random`` in tests). The first digit is
    never zero, so every code has exactly ``digit_count`` digits.
    """
    if digit_count < 1:
        raise ValueError('digit_count must be at least 1')
    rng = rng or secrets.SystemRandom()
    low = 10 ** (digit_count - 1)
    high = 10 ** digit_count - 1
    while True:
        code = f"{prefix}{rng.randint(low, high)}"
        if not exists(code):
            return code
