"""API token clean-up for values pasted by users."""

import re

# Cloudflare API tokens are 40-char alphanumeric strings with hyphens/underscores
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{20,}$")


def sanitize_token(raw: str) -> str:
    """Extract a clean API token from user input.

    Users sometimes paste the full curl command or a ``Bearer <token>`` string.
    This helper strips common prefixes/wrapping and validates the result.

    Raises ``ValueError`` if the cleaned value doesn't look like a CF API token.
    """
    cleaned = raw.strip()

    if (cleaned.startswith('"') and cleaned.endswith('"')) or \
       (cleaned.startswith("'") and cleaned.endswith("'")):
        cleaned = cleaned[1:-1].strip()

    if "Bearer" in cleaned:
        idx = cleaned.rfind("Bearer ")
        cleaned = cleaned[idx + len("Bearer "):].strip()
    elif cleaned.lower().startswith("curl "):
        raise ValueError(
            "It looks like you pasted a curl command.\n"
            "Please paste only the API token value (the 40-character string)."
        )

    cleaned = cleaned.strip().strip('"').strip("'").strip()

    if not cleaned:
        raise ValueError("Token is empty.")
    if not _TOKEN_PATTERN.match(cleaned):
        raise ValueError(
            "Invalid API token format.\n"
            "A Cloudflare API token should be an alphanumeric string "
            "(typically 40 characters)."
        )
    return cleaned
