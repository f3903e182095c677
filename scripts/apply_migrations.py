import os
import sys
from pathlib import Path

import psycopg2
from dotenv import load_dotenv

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "supabase" / "migrations"


def _db_url() -> str:
    for key in ("DATABASE_URL", "SUPABASE_DB_URL"):
        raw = (os.environ.get(key) or "").strip()
        if raw:
            return raw
    return ""


def apply_migrations(only: list[str] | None = None) -> int:
    """
    按文件名顺序执行 supabase/migrations 下的 SQL。

    中文注释:
    - 连接串只从环境变量读取（DATABASE_URL / SUPABASE_DB_URL），仓库内不保存任何凭据。
    - 所有迁移脚本都是幂等的（if not exists / create or replace），可重复执行。
    """
    db_url = _db_url()
    if not db_url:
        print("DATABASE_URL (or SUPABASE_DB_URL) is not configured")
        return 1

    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if only:
        files = [f for f in files if f.name in set(only)]
    if not files:
        print(f"No migrations found in {MIGRATIONS_DIR}")
        return 0

    conn = psycopg2.connect(db_url)
    try:
        conn.autocommit = True
        with conn.cursor() as cur:
            for path in files:
                print(f"Executing {path.name} ...")
                cur.execute(path.read_text(encoding="utf-8"))
    except psycopg2.Error as e:
        print(f"Migration failed: {e}")
        return 1
    finally:
        conn.close()

    print(f"Applied {len(files)} migration(s)")
    return 0


if __name__ == "__main__":
    load_dotenv()
    sys.exit(apply_migrations(sys.argv[1:] or None))
