"""Cloud secret references for process-level settings.

DATABASE_URL, PG_PASSWORD and ENCRYPTION_KEY may hold either a literal value
or a reference into a cloud secret manager:

  aws-secret://name            whole SecretString
  aws-secret://name#field      one key of a JSON SecretString
  gcp-secret://name            latest version in GCP_PROJECT_ID
  gcp-secret://projects/...    fully qualified version name

Vendor client ids and secrets are per-company credential sets stored encrypted
in app_credentials; they are never read from the process environment.
"""

from __future__ import annotations

import json
import logging
import os

logger = logging.getLogger("saasmgmt.secret_refs")

AWS_SECRET_SCHEME = "aws-secret://"
GCP_SECRET_SCHEME = "gcp-secret://"


def resolve_secret(value: str) -> str:
    """Return the plaintext behind ``value``; literals come back unchanged."""
    if value.startswith(AWS_SECRET_SCHEME):
        return _from_aws_secrets_manager(value[len(AWS_SECRET_SCHEME):])
    if value.startswith(GCP_SECRET_SCHEME):
        return _from_gcp_secret_manager(value[len(GCP_SECRET_SCHEME):])
    return value


def _from_aws_secrets_manager(ref: str) -> str:
    import boto3

    secret_id, _, json_key = ref.partition("#")
    client = boto3.client(
        "secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1")
    )
    secret_string = client.get_secret_value(SecretId=secret_id)["SecretString"]
    logger.info("Resolved secret %s from AWS Secrets Manager", secret_id)
    if json_key:
        return str(json.loads(secret_string)[json_key])
    return secret_string


def _from_gcp_secret_manager(ref: str) -> str:
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise RuntimeError(
                f"GCP_PROJECT_ID must be set to resolve gcp-secret://{ref}"
            )
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    logger.info("Resolved secret %s from GCP Secret Manager", name)
    return response.payload.data.decode("UTF-8")


def resolve_database_url() -> str:
    """DATABASE_URL if set, otherwise assembled from PG_* variables."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "saasmgmt")
    password = resolve_secret(os.environ.get("PG_PASSWORD", "localdev-change-me"))
    database = os.environ.get("PG_DATABASE", "saas_management")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
