from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from .settings import settings

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS trails (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        teacher_visibility TEXT NOT NULL DEFAULT 'ASSIGNED_ONLY'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS modules (
        id TEXT PRIMARY KEY,
        trail_id TEXT NOT NULL REFERENCES trails(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT 'practice',
        content TEXT,
        requirements TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS submissions (
        id TEXT PRIMARY KEY,
        module_id TEXT NOT NULL REFERENCES modules(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        comment TEXT,
        file_path TEXT,
        file_url TEXT,
        github_url TEXT,
        deploy_url TEXT,
        created INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trail_teachers (
        trail_id TEXT NOT NULL REFERENCES trails(id) ON DELETE CASCADE,
        teacher_id TEXT NOT NULL,
        PRIMARY KEY (trail_id, teacher_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_trail_access (
        trail_id TEXT NOT NULL REFERENCES trails(id) ON DELETE CASCADE,
        admin_id TEXT NOT NULL,
        PRIMARY KEY (trail_id, admin_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_submission_reviews (
        id TEXT PRIMARY KEY,
        submission_id TEXT NOT NULL UNIQUE REFERENCES submissions(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'pending',
        run_id TEXT,
        analysis TEXT,
        questions TEXT,
        coverage TEXT,
        previous_questions TEXT,
        error_message TEXT,
        started_at INTEGER,
        finished_at INTEGER,
        created INTEGER NOT NULL,
        updated INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_ai_submission_reviews_status ON ai_submission_reviews(status)",
]

def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)

def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)

engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)

def init_db(bind: Engine = None) -> None:
    with (bind or engine).begin() as conn:
        for ddl in SCHEMA:
            conn.execute(text(ddl))
