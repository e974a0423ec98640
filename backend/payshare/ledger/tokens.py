import base64
import secrets

DEFAULT_TOKEN_LENGTH = 10
MIN_TOKEN_LENGTH = 10


def generate_share_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Returns a URL-safe random token of exactly ``length`` characters.

    One random byte is drawn per output character, so the token always carries
    at least ``length`` bytes of entropy before truncation.
    """
    if length < MIN_TOKEN_LENGTH:
        raise ValueError(f"Share token length must be at least {MIN_TOKEN_LENGTH}")

    raw = secrets.token_bytes(length)
    encoded = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return encoded[:length]
