"""Utility script to prepare the database: schema, agent templates and a demo roster."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

import psycopg
from dotenv import load_dotenv
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from app.agents.service import seed_templates
from app.core.db import ensure_schema

logger = logging.getLogger("seed")


@dataclass(slots=True)
class SeedConfig:
    """Configuration derived from the environment for the seed process."""

    db_url: str
    employees_file: Path | None


def _safe_url(db_url: str) -> str:
    """Return ``db_url`` with any password redacted."""

    try:
        params = conninfo_to_dict(db_url)
    except psycopg.ProgrammingError:
        return db_url
    if not params.get("password"):
        return db_url
    params["password"] = "***"
    return make_conninfo(**params)


def _build_database_url() -> str:
    """Compute the database URL from ``DATABASE_URL`` or ``PG*`` variables."""

    direct = os.getenv("DATABASE_URL")
    if direct:
        return direct

    host = os.getenv("PGHOST")
    port = os.getenv("PGPORT", "5432")
    database = os.getenv("PGDATABASE")
    user = os.getenv("PGUSER")
    password = os.getenv("PGPASSWORD")

    if not all([host, database, user]):
        raise RuntimeError(
            "DATABASE_URL is not configured and PGHOST/PGDATABASE/PGUSER are missing."
        )

    auth = user
    if password:
        auth = f"{user}:{password}"
    return f"postgresql://{auth}@{host}:{port}/{database}"


def _load_config() -> SeedConfig:
    employees_env = os.getenv("SEED_EMPLOYEES_FILE")
    employees_file = Path(employees_env).expanduser() if employees_env else None
    if employees_file and not employees_file.exists():
        logger.warning("Employee file %s does not exist; skipping roster import.", employees_file)
        employees_file = None
    return SeedConfig(db_url=_build_database_url(), employees_file=employees_file)


def wait_for_database(max_attempts: int = 10, delay: float = 3.0) -> None:
    """Attempt to establish a database connection, retrying if necessary."""

    db_url = _build_database_url()
    safe_url = _safe_url(db_url)

    for attempt in range(1, max_attempts + 1):
        try:
            with psycopg.connect(db_url, connect_timeout=5) as connection:
                with connection.cursor() as cursor:
                    cursor.execute("SELECT 1")
        except Exception as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue

        logger.info("Database connection established after %d attempt(s): %s", attempt, safe_url)
        return


def load_employees(path: Path) -> list[dict]:
    """Read a JSON list of employee rows; each needs ``id``, ``company_id`` and ``full_name``."""

    rows = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(rows, list):
        raise ValueError(f"{path} must contain a JSON list")
    employees = []
    for row in rows:
        missing = [key for key in ("id", "company_id", "full_name") if not row.get(key)]
        if missing:
            raise ValueError(f"Employee row {row!r} is missing {', '.join(missing)}")
        employees.append(
            {
                "id": str(row["id"]),
                "company_id": str(row["company_id"]),
                "full_name": row["full_name"],
                "job_title": row.get("job_title"),
                "department": row.get("department"),
                "team_id": row.get("team_id"),
                "is_active": bool(row.get("is_active", True)),
            }
        )
    return employees


def _import_employees(conn: psycopg.Connection, employees: list[dict]) -> None:
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO employees (id, company_id, full_name, job_title, department, team_id, is_active)
            VALUES (%(id)s, %(company_id)s, %(full_name)s, %(job_title)s, %(department)s,
                    %(team_id)s, %(is_active)s)
            ON CONFLICT (id) DO UPDATE SET
                full_name = EXCLUDED.full_name,
                job_title = EXCLUDED.job_title,
                department = EXCLUDED.department,
                team_id = EXCLUDED.team_id,
                is_active = EXCLUDED.is_active
            """,
            employees,
        )
    conn.commit()
    logger.info("Imported %d employee(s).", len(employees))


def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    wait_for_database()

    config = _load_config()
    logger.info("Starting seed process using %s", _safe_url(config.db_url))

    with psycopg.connect(config.db_url) as conn:
        ensure_schema(conn)
        logger.info("Schema ensured successfully.")
        inserted = seed_templates(conn)
        conn.commit()
        logger.info("Agent templates ready (%d new).", inserted)
        if config.employees_file:
            _import_employees(conn, load_employees(config.employees_file))

    logger.info("Seed process completed.")


if __name__ == "__main__":
    main()
