from __future__ import annotations

import argparse
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "infra" / "migrations"


def build_config(database_url: str = DATABASE_URL) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


def run_upgrade(revision: str = "head") -> None:
    command.upgrade(build_config(), revision)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply damage report schema migrations.")
    parser.add_argument("revision", nargs="?", default="head")
    args = parser.parse_args(argv)
    run_upgrade(args.revision)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
