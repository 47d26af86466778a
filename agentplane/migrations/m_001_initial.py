"""Migration 001: baseline schema for workers, tool servers, tools, skills,
provider keys and port assignments."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS workers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            model TEXT NOT NULL,
            provider TEXT NOT NULL,
            system_prompt TEXT DEFAULT '',
            features TEXT DEFAULT '{}',
            mcp_servers TEXT DEFAULT '[]',
            skills TEXT DEFAULT '[]',
            project_id TEXT,
            status TEXT NOT NULL DEFAULT 'stopped',
            status_reason TEXT DEFAULT '',
            port INTEGER,
            api_key_encrypted TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS port_assignments (
            resource_class TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            port INTEGER NOT NULL,
            assigned_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (resource_class, resource_id),
            UNIQUE (port)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS tool_servers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'local',
            status TEXT NOT NULL DEFAULT 'stopped',
            port INTEGER,
            url TEXT,
            headers TEXT DEFAULT '{}',
            env_encrypted TEXT,
            created_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS tools (
            id TEXT PRIMARY KEY,
            server_id TEXT NOT NULL REFERENCES tool_servers(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            input_schema TEXT DEFAULT '{}',
            handler_type TEXT NOT NULL DEFAULT 'mock',
            mock_response TEXT,
            http_config TEXT,
            code TEXT,
            enabled INTEGER DEFAULT 1,
            UNIQUE (server_id, name)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS skills (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            content TEXT DEFAULT '',
            allowed_tools TEXT DEFAULT '[]',
            version TEXT DEFAULT '1.0.0',
            enabled INTEGER DEFAULT 1
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS provider_keys (
            provider TEXT PRIMARY KEY,
            key_encrypted TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
