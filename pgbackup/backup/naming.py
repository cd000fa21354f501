"""
Naming rules for backup folders and artifacts.

Layout:
    <root>/<YYYYMMDD_HHMMSS>/postgres_cluster.sql.gz
    <root>/<YYYYMMDD_HHMMSS>/postgres_globals.sql.gz
    <root>/<YYYYMMDD_HHMMSS>/postgres_db_<database>.sql.gz

Database names are used verbatim. A name containing '/' or other
path-unsafe characters escapes the folder; callers must validate database
names upstream.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


FOLDER_FORMAT = '%Y%m%d_%H%M%S'
FOLDER_PATTERN = re.compile(r'^\d{8}_\d{6}$')

ARTIFACT_SUFFIX = '.sql.gz'
CLUSTER_FILE = 'postgres_cluster.sql.gz'
GLOBALS_FILE = 'postgres_globals.sql.gz'
DATABASE_PREFIX = 'postgres_db_'


class ArtifactKind(Enum):
    """What a single artifact file contains."""
    CLUSTER = 'cluster'
    GLOBALS = 'globals'
    DATABASE = 'database'


def folder_name(instant: Optional[datetime] = None) -> str:
    """
    Format a cycle-start instant as a timestamp folder id.

    Args:
        instant: Cycle start (default: now, local time)

    Returns:
        Folder id in YYYYMMDD_HHMMSS form
    """
    if instant is None:
        instant = datetime.now()
    return instant.strftime(FOLDER_FORMAT)


def parse_timestamp(folder_id: str) -> Optional[datetime]:
    """
    Parse a folder id back into a naive local datetime.

    Returns None unless folder_id is exactly YYYYMMDD_HHMMSS with
    calendar-valid components.
    """
    if not isinstance(folder_id, str) or not FOLDER_PATTERN.match(folder_id):
        return None
    try:
        return datetime.strptime(folder_id, FOLDER_FORMAT)
    except ValueError:
        return None


def is_folder_name(name: str) -> bool:
    return parse_timestamp(name) is not None


def artifact_file_name(kind: ArtifactKind, database: Optional[str] = None) -> str:
    """
    Get the file name for an artifact.

    Args:
        kind: Artifact kind
        database: Database name (required for ArtifactKind.DATABASE)

    Returns:
        File name (without path)

    Raises:
        ValueError: If a database artifact is requested without a name
    """
    if kind is ArtifactKind.CLUSTER:
        return CLUSTER_FILE
    if kind is ArtifactKind.GLOBALS:
        return GLOBALS_FILE
    if kind is ArtifactKind.DATABASE:
        if not database:
            raise ValueError("Database artifact requires a database name")
        return f"{DATABASE_PREFIX}{database}{ARTIFACT_SUFFIX}"
    raise ValueError(f"Unhandled artifact kind: {kind}")


def parse_database_name(file_name: str) -> Optional[str]:
    """Inverse of the database artifact rule; None if file_name does not match."""
    if not file_name.startswith(DATABASE_PREFIX) or not file_name.endswith(ARTIFACT_SUFFIX):
        return None
    name = file_name[len(DATABASE_PREFIX):-len(ARTIFACT_SUFFIX)]
    return name or None


def classify_artifact(file_name: str) -> Optional[Tuple[ArtifactKind, Optional[str]]]:
    """
    Identify an artifact file.

    Returns:
        (kind, database name or None), or None for unrelated files
    """
    if file_name == CLUSTER_FILE:
        return ArtifactKind.CLUSTER, None
    if file_name == GLOBALS_FILE:
        return ArtifactKind.GLOBALS, None
    database = parse_database_name(file_name)
    if database is not None:
        return ArtifactKind.DATABASE, database
    return None
