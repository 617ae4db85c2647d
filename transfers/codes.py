import secrets

CODE_LENGTH = 6
CODE_MIN = 10 ** (CODE_LENGTH - 1)
CODE_MAX = 10**CODE_LENGTH - 1


def generate_code():
    """Return a six digit code in 100000-999999, drawn from the system CSPRNG."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def generate_verification_codes():
    """Return ``(keeper_code, controller_code)``, drawn independently of each other."""
    return generate_code(), generate_code()


def codes_match(expected, submitted):
    if submitted is None:
        return False
    return secrets.compare_digest(str(expected).encode(), str(submitted).strip().encode())
