#!/usr/bin/env python3
"""
Create the PostgreSQL schema used by the rally results service
"""
import os
import psycopg2


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS teams (
        id SERIAL PRIMARY KEY,
        name VARCHAR(200) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        player_name VARCHAR(200) NOT NULL,
        team_id INTEGER REFERENCES teams(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rallies (
        id SERIAL PRIMARY KEY,
        name VARCHAR(200) NOT NULL,
        competition_date TIMESTAMPTZ,
        registration_deadline TIMESTAMPTZ,
        max_participants INTEGER,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        status VARCHAR(32),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rally_registrations (
        id SERIAL PRIMARY KEY,
        rally_id INTEGER NOT NULL REFERENCES rallies(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        class_name VARCHAR(100),
        status VARCHAR(32) NOT NULL DEFAULT 'registered',
        UNIQUE(rally_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rally_results (
        id SERIAL PRIMARY KEY,
        rally_id INTEGER NOT NULL REFERENCES rallies(id) ON DELETE CASCADE,
        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        participant_name VARCHAR(200),
        class_name VARCHAR(100),
        overall_position INTEGER,
        class_position INTEGER,
        total_points NUMERIC(10, 2),
        extra_points NUMERIC(10, 2),
        did_not_finish BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT rally_results_one_identity
            CHECK ((user_id IS NULL) <> (participant_name IS NULL))
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS rally_results_rally_user_idx
        ON rally_results (rally_id, user_id) WHERE user_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS rally_results_status (
        rally_id INTEGER PRIMARY KEY REFERENCES rallies(id) ON DELETE CASCADE,
        results_completed BOOLEAN NOT NULL DEFAULT FALSE,
        results_approved BOOLEAN NOT NULL DEFAULT FALSE,
        completed_at TIMESTAMPTZ,
        approved_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT rally_results_status_approved_needs_completed
            CHECK (NOT results_approved OR results_completed)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS team_rally_totals (
        rally_id INTEGER NOT NULL REFERENCES rallies(id) ON DELETE CASCADE,
        team_id INTEGER NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
        team_name VARCHAR(200),
        class_name VARCHAR(100) NOT NULL,
        total_points NUMERIC(10, 2) NOT NULL DEFAULT 0,
        team_position INTEGER,
        participating_members INTEGER NOT NULL DEFAULT 0,
        scoring_members INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (rally_id, team_id, class_name)
    )
    """,
]


def create_tables(conn):
    """Create the database schema"""
    with conn.cursor() as cur:
        for statement in SCHEMA:
            cur.execute(statement)
    conn.commit()
    print("Database schema created successfully")


def main():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    conn = None
    try:
        conn = psycopg2.connect(database_url)
        print("Connected to PostgreSQL database")
        create_tables(conn)
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM rallies")
            rally_count = cur.fetchone()[0]
        print(f"- {rally_count} rallies")
    except psycopg2.Error as e:
        print(f"Error creating schema: {e}")
        return 1
    finally:
        if conn is not None:
            conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
