import logging
from datetime import date
from typing import Optional

import psycopg
from psycopg.rows import dict_row

log = logging.getLogger("growbuddy.storage")

MAX_ONGOING_GROWS = 20

UPDATE_FIELDS = (
    "environment",
    "feeding",
    "growth_stage",
    "plant_health",
    "notes",
    "terpene_smell",
    "flower_development",
)


class StorageError(Exception):
    pass


class GrowLimitReached(StorageError):
    pass


def with_sslmode(url: str) -> str:
    # managed Postgres (Supabase, Neon, Render) wants ssl
    if "sslmode=" in url:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}sslmode=require"


def _column_exists(cur, table: str, column: str) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM information_schema.columns
        WHERE table_name=%s AND column_name=%s
        """,
        (table, column),
    )
    return cur.fetchone() is not None


class Repository:
    """Grows and their daily updates, stored in Postgres."""

    def __init__(self, database_url: str):
        self.database_url = with_sslmode(database_url)

    def _connect(self):
        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_schema(self) -> None:
        """
        Soft migration: creates missing tables, adds columns that older
        deployments lack, never drops anything.
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS grows (
                        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                        user_id BIGINT NOT NULL,
                        start_date DATE NOT NULL,
                        flower_start_date DATE,
                        harvest_date DATE,
                        strain TEXT,
                        germination_method TEXT,
                        pot_size TEXT,
                        current_stage TEXT,
                        is_harvested BOOLEAN NOT NULL DEFAULT FALSE,
                        wet_weight DOUBLE PRECISION,
                        dry_weight DOUBLE PRECISION,
                        harvest_notes TEXT,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    );
                    """
                )
                if not _column_exists(cur, "grows", "harvest_notes"):
                    cur.execute("ALTER TABLE grows ADD COLUMN harvest_notes TEXT;")

                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS grow_updates (
                        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                        grow_id UUID NOT NULL REFERENCES grows(id) ON DELETE CASCADE,
                        update_date DATE NOT NULL,
                        pictures TEXT[] NOT NULL DEFAULT '{}',
                        environment TEXT,
                        feeding TEXT,
                        growth_stage TEXT,
                        plant_health TEXT,
                        notes TEXT,
                        terpene_smell TEXT,
                        flower_development TEXT,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        UNIQUE (grow_id, update_date)
                    );
                    """
                )
                for column in ("terpene_smell", "flower_development"):
                    if not _column_exists(cur, "grow_updates", column):
                        cur.execute(f"ALTER TABLE grow_updates ADD COLUMN {column} TEXT;")

                cur.execute("CREATE INDEX IF NOT EXISTS idx_grows_user_ongoing ON grows(user_id, is_harvested);")
        log.info("schema ready")

    # ---------- Grows ----------
    def get_grow(self, grow_id) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM grows WHERE id=%s", (grow_id,))
                return cur.fetchone()

    def get_active_grow(self, user_id) -> Optional[dict]:
        """Most recently created ongoing grow."""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT *
                    FROM grows
                    WHERE user_id=%s AND is_harvested = FALSE
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (user_id,),
                )
                return cur.fetchone()

    def count_ongoing(self, user_id) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM grows WHERE user_id=%s AND is_harvested = FALSE",
                    (user_id,),
                )
                return int(cur.fetchone()["n"])

    def list_ongoing(self, user_id) -> list:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM grows WHERE user_id=%s AND is_harvested = FALSE ORDER BY created_at DESC",
                    (user_id,),
                )
                return cur.fetchall()

    def list_all_ongoing(self) -> list:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM grows WHERE is_harvested = FALSE ORDER BY created_at DESC")
                return cur.fetchall()

    def get_latest_unresulted_harvest(self, user_id) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT *
                    FROM grows
                    WHERE user_id=%s AND is_harvested = TRUE AND wet_weight IS NULL
                    ORDER BY harvest_date DESC NULLS LAST, created_at DESC
                    LIMIT 1
                    """,
                    (user_id,),
                )
                return cur.fetchone()

    def create_grow(self, user_id, start_date: "date | str", strain: str, germination_method: str,
                    pot_size: str, current_stage: str = "vegetative") -> dict:
        if isinstance(start_date, str):
            start_date = date.fromisoformat(start_date)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM grows WHERE user_id=%s AND is_harvested = FALSE",
                    (user_id,),
                )
                if cur.fetchone()["n"] >= MAX_ONGOING_GROWS:
                    raise GrowLimitReached(
                        f"You already have {MAX_ONGOING_GROWS} ongoing grows. "
                        "Please harvest some before starting a new one."
                    )
                cur.execute(
                    """
                    INSERT INTO grows (user_id, start_date, strain, germination_method, pot_size, current_stage)
                    VALUES (%s,%s,%s,%s,%s,%s)
                    RETURNING *
                    """,
                    (user_id, start_date, strain, germination_method, pot_size, current_stage),
                )
                return cur.fetchone()

    def _update_grow(self, grow_id, **fields) -> dict:
        assignments = ", ".join(f"{name}=%s" for name in fields)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE grows SET {assignments}, updated_at=now() WHERE id=%s RETURNING *",
                    (*fields.values(), grow_id),
                )
                row = cur.fetchone()
        if row is None:
            raise StorageError(f"grow {grow_id} not found")
        return row

    def start_flower(self, grow_id, day: date) -> dict:
        return self._update_grow(grow_id, flower_start_date=day, current_stage="flower")

    def harvest(self, grow_id, day: date) -> dict:
        return self._update_grow(grow_id, is_harvested=True, harvest_date=day)

    def record_results(self, grow_id, wet_weight: float, dry_weight: Optional[float],
                       harvest_notes: Optional[str]) -> dict:
        return self._update_grow(
            grow_id, wet_weight=wet_weight, dry_weight=dry_weight, harvest_notes=harvest_notes
        )

    # ---------- Daily updates ----------
    def save_grow_update(self, grow_id, day: date, pictures: Optional[list] = None, **fields) -> dict:
        """
        One update per grow per day: a second save on the same day merges into
        the first (non-empty values win, pictures are replaced only when given).
        """
        unknown = set(fields) - set(UPDATE_FIELDS)
        if unknown:
            raise ValueError(f"unknown grow update fields: {sorted(unknown)}")
        values = [fields.get(name) for name in UPDATE_FIELDS]
        columns = ", ".join(UPDATE_FIELDS)
        placeholders = ", ".join(["%s"] * len(UPDATE_FIELDS))
        merges = ",\n".join(f"{name} = COALESCE(EXCLUDED.{name}, grow_updates.{name})" for name in UPDATE_FIELDS)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO grow_updates (grow_id, update_date, pictures, {columns})
                    VALUES (%s, %s, %s::text[], {placeholders})
                    ON CONFLICT (grow_id, update_date) DO UPDATE SET
                    pictures = CASE WHEN cardinality(EXCLUDED.pictures) > 0
                                    THEN EXCLUDED.pictures ELSE grow_updates.pictures END,
                    {merges},
                    updated_at = now()
                    RETURNING *
                    """,
                    (grow_id, day, list(pictures or []), *values),
                )
                return cur.fetchone()

    def get_today_update(self, grow_id, today: date) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM grow_updates WHERE grow_id=%s AND update_date=%s",
                    (grow_id, today),
                )
                return cur.fetchone()

