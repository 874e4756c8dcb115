"""
tokenusage - PostgreSQL Schema

DDL for the two usage log tables and the statistics table.
"""

from tokenusage.db.models import DimensionType

LOG_TABLES = {
    DimensionType.ACCESS_KEY: "access_key_usage",
    DimensionType.USER: "user_usage",
}

STATISTICS_TABLE = "usage_statistics"

_LOG_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGSERIAL PRIMARY KEY,
    access_key_id VARCHAR(64) {access_key_null},
    user_id VARCHAR(255) {user_null},
    input_tokens INTEGER NOT NULL DEFAULT 0 CHECK (input_tokens >= 0),
    cache_creation_input_tokens INTEGER NOT NULL DEFAULT 0 CHECK (cache_creation_input_tokens >= 0),
    cache_read_input_tokens INTEGER NOT NULL DEFAULT 0 CHECK (cache_read_input_tokens >= 0),
    output_tokens INTEGER NOT NULL DEFAULT 0 CHECK (output_tokens >= 0),
    request_id VARCHAR(255),
    model VARCHAR(100),
    stop_reason VARCHAR(50),
    endpoint VARCHAR(255),
    feature VARCHAR(100),
    occur_time TIMESTAMPTZ NOT NULL,
    message_id VARCHAR(64) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT {table}_message_id_key UNIQUE (message_id)
);
CREATE INDEX IF NOT EXISTS idx_{table}_access_key_time ON {table} (access_key_id, occur_time);
CREATE INDEX IF NOT EXISTS idx_{table}_user_time ON {table} (user_id, occur_time);
CREATE INDEX IF NOT EXISTS idx_{table}_occur_time ON {table} (occur_time);
CREATE INDEX IF NOT EXISTS idx_{table}_model ON {table} (model);
"""

_STATISTICS_DDL = f"""
CREATE TABLE IF NOT EXISTS {STATISTICS_TABLE} (
    id BIGSERIAL PRIMARY KEY,
    dimension_type VARCHAR(20) NOT NULL CHECK (dimension_type IN ('access_key', 'user')),
    dimension_id VARCHAR(255) NOT NULL,
    period_type VARCHAR(10) NOT NULL CHECK (period_type IN ('hour', 'day', 'month')),
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    total_requests INTEGER NOT NULL DEFAULT 0,
    total_input_tokens BIGINT NOT NULL DEFAULT 0,
    total_cache_creation_input_tokens BIGINT NOT NULL DEFAULT 0,
    total_cache_read_input_tokens BIGINT NOT NULL DEFAULT 0,
    total_output_tokens BIGINT NOT NULL DEFAULT 0,
    last_update_time TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uniq_usage_stats_dimension_period
        UNIQUE (dimension_type, dimension_id, period_type, period_start)
);
CREATE INDEX IF NOT EXISTS idx_usage_stats_period ON {STATISTICS_TABLE} (period_type, period_start);
CREATE INDEX IF NOT EXISTS idx_usage_stats_period_end ON {STATISTICS_TABLE} (period_end);
"""


def schema_statements() -> str:
    """Full DDL, safe to run repeatedly."""
    parts = [
        _LOG_TABLE_DDL.format(
            table=LOG_TABLES[DimensionType.ACCESS_KEY],
            access_key_null="NOT NULL",
            user_null="NULL",
        ),
        _LOG_TABLE_DDL.format(
            table=LOG_TABLES[DimensionType.USER],
            access_key_null="NULL",
            user_null="NOT NULL",
        ),
        _STATISTICS_DDL,
    ]
    return "\n".join(parts)


async def create_schema(conn) -> None:
    """Create tables and indexes on an asyncpg connection."""
    await conn.execute(schema_statements())
