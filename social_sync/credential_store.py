"""
Data access for Connection records.

Pure persistence, no policy: these functions add, look up and mutate rows
in the caller's session. Callers own the transaction (commit/rollback).
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from social_sync.models import Connection, ConnectionStatus
from social_sync.platforms.base import TokenGrant
from social_sync.utils import new_id, utcnow

logger = logging.getLogger(__name__)


def create_pending(db: Session, platform: str, state_hash: str, state_expires_at: datetime) -> Connection:
    now = utcnow()
    connection = Connection(
        connection_id=new_id("conn"),
        platform=platform,
        status=ConnectionStatus.PENDING.value,
        oauth_state_hash=state_hash,
        oauth_state_expires_at=state_expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(connection)
    db.flush()
    return connection


def create_active(
    db: Session,
    platform: str,
    external_account_id: str,
    display_name: Optional[str],
    grant: TokenGrant,
) -> Connection:
    now = utcnow()
    connection = Connection(
        connection_id=new_id("conn"),
        platform=platform,
        external_account_id=external_account_id,
        display_name=display_name,
        status=ConnectionStatus.ACTIVE.value,
        created_at=now,
        updated_at=now,
    )
    apply_grant(connection, grant)
    db.add(connection)
    db.flush()
    return connection


def get_connection(db: Session, connection_id: str) -> Optional[Connection]:
    return db.get(Connection, connection_id)


def find_pending_by_state(db: Session, state_hash: str) -> Optional[Connection]:
    return (
        db.query(Connection)
        .filter(
            Connection.oauth_state_hash == state_hash,
            Connection.status == ConnectionStatus.PENDING.value,
        )
        .first()
    )


def find_active(db: Session, platform: str, external_account_id: str) -> Optional[Connection]:
    return (
        db.query(Connection)
        .filter(
            Connection.platform == platform,
            Connection.external_account_id == external_account_id,
            Connection.status == ConnectionStatus.ACTIVE.value,
        )
        .first()
    )


def list_connections(db: Session, include_pending: bool = False) -> list[Connection]:
    query = db.query(Connection)
    if not include_pending:
        query = query.filter(Connection.status != ConnectionStatus.PENDING.value)
    return query.order_by(Connection.created_at.asc()).all()


def consume_state(connection: Connection) -> None:
    """Make a pending row's OAuth state single-use."""
    connection.oauth_state_hash = None
    connection.oauth_state_expires_at = None
    connection.updated_at = utcnow()


def apply_grant(connection: Connection, grant: TokenGrant) -> None:
    connection.access_token = grant.access_token
    if grant.refresh_token is not None:
        connection.refresh_token = grant.refresh_token
    connection.token_expires_at = grant.expires_at
    connection.updated_at = utcnow()


def activate(
    connection: Connection,
    external_account_id: str,
    display_name: Optional[str],
    grant: TokenGrant,
) -> None:
    connection.external_account_id = external_account_id
    connection.display_name = display_name
    connection.status = ConnectionStatus.ACTIVE.value
    apply_grant(connection, grant)


def set_status(connection: Connection, status: ConnectionStatus) -> None:
    connection.status = status.value
    connection.updated_at = utcnow()


def save_cursor(connection: Connection, cursor: Optional[str], synced_at: Optional[datetime] = None) -> None:
    connection.poll_cursor = cursor
    if synced_at is not None:
        connection.last_synced_at = synced_at
    connection.updated_at = utcnow()
