import os

from .errors import ConfigFailure
from .types import TokenConfig

DEFAULT_PREFIX = "APP_STORE_CONNECT_"


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present. Escaped
    newlines (\\n) inside quoted values are expanded so an inline PEM key
    can live on one line.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export ") :].lstrip()
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] == val[-1] and val[0] in "\"'":  # noqa: PLR2004
                    val = val[1:-1].replace("\\n", "\n")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # a missing file is not an error; the real environment may be enough
        pass
    return values


def load_token_config_from_env(
    env_path: str | None = None,
    prefix: str = DEFAULT_PREFIX,
    **kwargs,
) -> TokenConfig:
    """Build a TokenConfig from environment variables.

    Reads ``<prefix>KEY_ID``, ``<prefix>ISSUER_ID``, ``<prefix>P8_PATH`` and
    ``<prefix>P8_CONTENT``. If 'env_path' is provided, variables from the
    .env file augment lookups; values in the actual environment take
    precedence over the file.

    kwargs keywords are passed through to TokenConfig (audience, lifetime,
    refresh_buffer).

    Raises:
        ConfigFailure: if the key id, the issuer id, or both key sources are missing
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    key_id = env_map.get(f"{prefix}KEY_ID")
    issuer_id = env_map.get(f"{prefix}ISSUER_ID")
    key_path = env_map.get(f"{prefix}P8_PATH") or None
    key_content = env_map.get(f"{prefix}P8_CONTENT") or None

    if not key_id:
        raise ConfigFailure(f"{prefix}KEY_ID environment variable is required")
    if not issuer_id:
        raise ConfigFailure(f"{prefix}ISSUER_ID environment variable is required")
    if not key_path and not key_content:
        raise ConfigFailure(
            f"Either {prefix}P8_PATH or {prefix}P8_CONTENT environment variable is required"
        )

    return TokenConfig(
        key_id=key_id,
        issuer_id=issuer_id,
        private_key_path=key_path,
        private_key_content=key_content,
        **kwargs,
    )
