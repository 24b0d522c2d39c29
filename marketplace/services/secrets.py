"""Payment processor credentials from a pluggable secrets backend.

Backends (``SECRETS_BACKEND``):
- env: the ``stripe_*`` settings (environment / .env), for development
- aws_secrets: AWS Secrets Manager, one secret per key or a JSON bundle named ``SECRETS_PREFIX``
- gcp_secrets: GCP Secret Manager in project ``SECRETS_PREFIX`` (or ``GCP_PROJECT_ID``)

Values are fetched on first use and cached for the life of the process.
"""

import json
import logging
from functools import lru_cache

from marketplace.config import settings

logger = logging.getLogger(__name__)

# The only secrets this service reads; each is also a Settings field for the env backend.
PROCESSOR_API_KEY = "stripe_secret_key"
WEBHOOK_SECRET = "stripe_webhook_secret"
KNOWN_SECRETS = frozenset({PROCESSOR_API_KEY, WEBHOOK_SECRET})


def _fetch_from_env(key: str) -> str:
    return getattr(settings, key, "")


def _fetch_from_aws(key: str) -> str:
    import boto3

    client = boto3.client("secretsmanager", region_name=settings.aws_region)
    secret_id = f"{settings.secrets_prefix}/{key}" if settings.secrets_prefix else key

    try:
        return client.get_secret_value(SecretId=secret_id)["SecretString"]
    except client.exceptions.ResourceNotFoundException:
        if not settings.secrets_prefix:
            raise ValueError(f"Secret '{key}' not found in AWS Secrets Manager")

    # Fall back to a single JSON secret holding every processor credential.
    bundle = json.loads(
        client.get_secret_value(SecretId=settings.secrets_prefix)["SecretString"]
    )
    if key not in bundle:
        raise ValueError(f"Secret '{key}' not found in AWS secret '{settings.secrets_prefix}'")
    return bundle[key]


def _fetch_from_gcp(key: str) -> str:
    from google.cloud import secretmanager

    client = secretmanager.SecretManagerServiceClient()
    project = settings.secrets_prefix or settings.gcp_project_id
    if not project:
        raise ValueError("gcp_secrets backend needs SECRETS_PREFIX or GCP_PROJECT_ID")
    # Secret ids use dashes: stripe_secret_key -> stripe-secret-key
    name = f"projects/{project}/secrets/{key.replace('_', '-')}/versions/latest"
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


_BACKENDS = {
    "env": _fetch_from_env,
    "aws_secrets": _fetch_from_aws,
    "gcp_secrets": _fetch_from_gcp,
}


@lru_cache(maxsize=8)
def get_secret(key: str) -> str:
    if key not in KNOWN_SECRETS:
        raise ValueError(f"Unknown secret '{key}'")
    backend = settings.secrets_backend
    fetcher = _BACKENDS.get(backend)
    if fetcher is None:
        raise ValueError(
            f"Unknown secrets backend: '{backend}'. "
            f"Valid options: {', '.join(_BACKENDS.keys())}"
        )

    logger.info("Fetching secret '%s' via %s backend", key, backend)
    value = fetcher(key)
    if not value:
        raise ValueError(f"Secret '{key}' is empty")
    return value


def get_processor_api_key() -> str:
    return get_secret(PROCESSOR_API_KEY)


def get_webhook_secret() -> str:
    return get_secret(WEBHOOK_SECRET)
