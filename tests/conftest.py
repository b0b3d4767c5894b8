"""
Shared test fixtures for livegraph.

The schema mirrors a small field-service app: users, company profiles and
technicians, with a one-to-one profile link and a one-to-many staff link.
"""

import sqlite3

import pytest

from livegraph.config import StoreSettings
from livegraph.schema import EntityTypeDef, LinkDef, LinkSide, Schema, SchemaRegistry, field


def build_schema() -> Schema:
    """Schema used across the test suite."""
    users = EntityTypeDef(
        name="$users",
        fields=(field("email", "string", unique=True, indexed=True),),
    )
    profiles = EntityTypeDef(
        name="companyProfiles",
        fields=(
            field("companyName", "string", required=True),
            field("isCompanyAdmin", "boolean"),
            field("seats", "number"),
        ),
    )
    technicians = EntityTypeDef(
        name="technicians",
        fields=(
            field("firstName", "string", required=True),
            field("lastName", "string"),
            field("phone", "string"),
            field("email", "string", indexed=True),
            field("rating", "number"),
            field("createdAt", "any"),
        ),
    )
    user_profile = LinkDef(
        name="userProfile",
        forward=LinkSide(on="companyProfiles", has="one", label="$user"),
        reverse=LinkSide(on="$users", has="one", label="profile"),
    )
    staff = LinkDef(
        name="companyTechnicians",
        forward=LinkSide(on="companyProfiles", has="many", label="technicians"),
        reverse=LinkSide(on="technicians", has="one", label="company"),
    )
    return Schema(entities=(users, profiles, technicians), links=(user_profile, staff))


@pytest.fixture
def schema():
    """Test schema."""
    return build_schema()


@pytest.fixture
def registry(schema):
    """Frozen registry over the test schema."""
    return SchemaRegistry.from_schema(schema)


@pytest.fixture
def fast_settings():
    """Settings with short backoff so sync tests finish quickly."""
    return StoreSettings(
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        log_format="text",
    )


@pytest.fixture
def block_pending_deletes():
    """Returns a function that makes deletes from a cache's pending log fail."""

    def block(path):
        conn = sqlite3.connect(str(path))
        try:
            conn.execute(
                """
                CREATE TRIGGER block_pending_delete BEFORE DELETE ON pending_transactions
                BEGIN
                    SELECT RAISE(ABORT, 'pending log is read-only');
                END
                """
            )
            conn.commit()
        finally:
            conn.close()

    return block
