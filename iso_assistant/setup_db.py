#!/usr/bin/env python3
"""
Database Setup Script
Initializes the Postgres database, pgvector tables and conversation tables
for the ISO New England assistant.

Usage:
    python -m iso_assistant.setup_db
    iso-assistant-setup-db
"""

import asyncio
import sys

import psycopg
from psycopg import sql

from iso_assistant.config import (
    DATABASE_URL,
    POSTGRES_DB,
    POSTGRES_HOST,
    POSTGRES_PASSWORD,
    POSTGRES_PORT,
    POSTGRES_USER,
    VECTOR_COLLECTION_NAME,
    VECTOR_DIMENSION,
)
from iso_assistant.database import Database
from iso_assistant.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


VECTOR_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS collections (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        content TEXT NOT NULL,
        metadata JSONB,
        collection_id TEXT REFERENCES collections(id),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS document_chunks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        embedding vector({VECTOR_DIMENSION}) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS document_chunks_embedding_idx
    ON document_chunks USING ivfflat (embedding vector_cosine_ops)
    WITH (lists = 100)
    """,
    """
    CREATE INDEX IF NOT EXISTS documents_collection_id_idx
    ON documents(collection_id)
    """,
]


async def create_database() -> None:
    """Create the assistant database if it doesn't exist"""
    print("Creating database if needed...")

    # Connect to the default postgres database to create ours
    admin_conn_string = (
        f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/postgres"
    )
    async with await psycopg.AsyncConnection.connect(admin_conn_string, autocommit=True) as conn:
        cur = await conn.execute("SELECT 1 FROM pg_database WHERE datname = %s", (POSTGRES_DB,))
        if await cur.fetchone() is None:
            await conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(POSTGRES_DB)))
            print(f"✓ Database '{POSTGRES_DB}' created successfully")
        else:
            print(f"✓ Database '{POSTGRES_DB}' already exists")


async def verify_connection() -> None:
    """Verify connection to the database"""
    print("Verifying database connection...")

    async with await psycopg.AsyncConnection.connect(DATABASE_URL) as conn:
        cur = await conn.execute("SELECT version()")
        version = (await cur.fetchone())[0]
        print(f"✓ Connected to: {version.split(',')[0]}")


async def create_vector_tables(database: Database) -> None:
    """Enable pgvector and create the passage tables the ingestion pipeline fills"""
    print("Creating vector storage tables...")

    async with database.connection() as conn:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        for statement in VECTOR_SCHEMA:
            await conn.execute(statement)
        await conn.execute(
            """
            INSERT INTO collections (id, name, description)
            VALUES (%s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (VECTOR_COLLECTION_NAME, "ISO New England", "ISO New England public documents"),
        )
    print("✓ Vector storage tables created successfully")


async def create_conversation_tables(database: Database) -> None:
    """Create the conversation log and agent checkpoint tables"""
    print("Initializing conversation and checkpoint tables...")
    await database.setup_schema()
    print("✓ Conversation and checkpoint tables initialized successfully")


async def run_setup() -> None:
    await create_database()
    print()
    await verify_connection()
    print()

    database = Database(max_size=2)
    await database.open()
    try:
        await create_vector_tables(database)
        print()
        await create_conversation_tables(database)
    finally:
        await database.close()


def main() -> None:
    """Run all setup steps"""
    configure_logging()

    print("=" * 60)
    print("ISO New England Assistant - Database Setup")
    print("=" * 60)
    print()

    try:
        asyncio.run(run_setup())
        print()
        print("=" * 60)
        print("✓ Database setup complete!")
        print("=" * 60)
    except Exception as e:
        logger.error("database_setup_failed", error=str(e))
        print()
        print("=" * 60)
        print(f"✗ Setup failed: {e}")
        print("=" * 60)
        print("\nTroubleshooting:")
        print("1. Ensure Postgres (with pgvector) is running: docker compose ps")
        print("2. Check the POSTGRES_* environment variables")
        print("3. Verify Postgres is accessible: psql -U postgres -h localhost")
        sys.exit(1)


if __name__ == "__main__":
    main()
