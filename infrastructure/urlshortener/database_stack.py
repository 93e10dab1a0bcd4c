"""
Database Stack
==============
The shortcode table. Partition key `Shortcode`; the sort key attribute is
chosen once per deployment (`SortKey` or `Timestamp`). The optional
`ShortcodeIndex` GSI on (Shortcode, Timestamp) projects all attributes and
serves time-ordered view-log queries.
"""
from __future__ import annotations

from provisioner.descriptors import ResourceDescriptor
from provisioner.resources import data_store

from urlshortener.config import DeploymentConfig

TABLE = "ShortcodesTable"
PARTITION_KEY = "Shortcode"
SHORTCODE_INDEX = {"name": "ShortcodeIndex", "partitionKey": "Shortcode", "sortKey": "Timestamp"}


def database_stack(config: DeploymentConfig) -> list[ResourceDescriptor]:
    return [
        data_store(
            TABLE,
            table_name=config.table_name,
            partition_key=PARTITION_KEY,
            sort_key=config.sort_key,
            indexes=[dict(SHORTCODE_INDEX)] if config.shortcode_index else None,
            removable=config.removable_table,
        )
    ]
