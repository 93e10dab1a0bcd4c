"""
Deployment Configuration
========================
Each option is taken from the context map when present there, else from its
environment variable, else from the default below.

  context key     env var           default
  tableName       TABLE_NAME        DefaultTableName
  domainName      DOMAIN_NAME       example.com
  accountId       ACCOUNT_ID        (none: resolved from STS at deploy time)
  region          REGION            us-east-1
  subdomain       SUBDOMAIN         app
  sortKey         SORT_KEY          SortKey          (SortKey | Timestamp)
  shortcodeIndex  SHORTCODE_INDEX   true
  authEnabled     AUTH_ENABLED      true
  artifact        ARTIFACT          bin/main.zip     (zip path or s3:// URI)
  stageName       STAGE_NAME        prod
  stackName       STACK_NAME        URLShortenerStack
  removableTable  REMOVABLE_TABLE   false

Context comes from `--context key=value` (repeatable) or `--context-file ctx.json`.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from provisioner.errors import InvalidDescriptor


class DeploymentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    table_name: str = Field("DefaultTableName", alias="tableName")
    domain_name: str = Field("example.com", alias="domainName")
    account_id: str | None = Field(None, alias="accountId")
    region: str = Field("us-east-1", alias="region")
    subdomain: str = Field("app", alias="subdomain")
    sort_key: Literal["SortKey", "Timestamp"] = Field("SortKey", alias="sortKey")
    shortcode_index: bool = Field(True, alias="shortcodeIndex")
    auth_enabled: bool = Field(True, alias="authEnabled")
    artifact: str = Field("bin/main.zip", alias="artifact")
    stage_name: str = Field("prod", alias="stageName")
    stack_name: str = Field("URLShortenerStack", alias="stackName")
    removable_table: bool = Field(False, alias="removableTable")

    @property
    def fqdn(self) -> str:
        return f"{self.subdomain}.{self.domain_name}" if self.subdomain else self.domain_name

    @classmethod
    def from_sources(
        cls, context: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None,
    ) -> "DeploymentConfig":
        context = context or {}
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for key, env_var in ENV_VARS.items():
            if context.get(key) not in (None, ""):
                values[key] = context[key]
            elif environ.get(env_var):
                values[key] = environ[env_var]
        return cls.model_validate(values)


ENV_VARS = {
    "tableName": "TABLE_NAME",
    "domainName": "DOMAIN_NAME",
    "accountId": "ACCOUNT_ID",
    "region": "REGION",
    "subdomain": "SUBDOMAIN",
    "sortKey": "SORT_KEY",
    "shortcodeIndex": "SHORTCODE_INDEX",
    "authEnabled": "AUTH_ENABLED",
    "artifact": "ARTIFACT",
    "stageName": "STAGE_NAME",
    "stackName": "STACK_NAME",
    "removableTable": "REMOVABLE_TABLE",
}


def parse_context(pairs: list[str] | None) -> dict[str, str]:
    context: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise InvalidDescriptor(f"Context entries look like key=value, got {pair!r}")
        if key not in ENV_VARS:
            raise InvalidDescriptor(f"Unknown context key {key!r}")
        context[key] = value
    return context


def load_context_file(path: str | os.PathLike) -> dict[str, Any]:
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise InvalidDescriptor(f"Context file {path} must hold a JSON object")
    # cdk.json style files keep their values under "context"
    return dict(data.get("context", data))
