# students_api/db.py
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    TIMESTAMP,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .instrumentation import QueryInstrumentation

TABLE = "students"

metadata = MetaData()

students = Table(
    TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("major", String(100)),
    Column("created_at", TIMESTAMP, server_default=func.current_timestamp()),
)


def create_db_engine(url: str, pool_size: int = 10) -> Engine:
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_size=pool_size, max_overflow=0, pool_pre_ping=True)


def _row(row) -> Dict[str, Any]:
    return dict(row._mapping)


class StudentStore:
    """CRUD over the students table; every statement goes through QueryInstrumentation."""

    def __init__(self, engine: Engine, queries: QueryInstrumentation):
        self.engine = engine
        self.queries = queries

    def init_schema(self):
        metadata.create_all(self.engine)

    def list_students(self) -> List[Dict[str, Any]]:
        stmt = select(students).order_by(students.c.created_at.desc(), students.c.id.desc())
        with self.engine.connect() as conn:
            result = self.queries.execute("select", TABLE, conn.execute, stmt)
            return [_row(r) for r in result]

    def get_student(self, student_id: int) -> Optional[Dict[str, Any]]:
        stmt = select(students).where(students.c.id == student_id)
        with self.engine.connect() as conn:
            result = self.queries.execute("select", TABLE, conn.execute, stmt)
            row = result.first()
        return _row(row) if row is not None else None

    def create_student(self, name: str, email: str, major: Optional[str]) -> Dict[str, Any]:
        stmt = insert(students).values(name=name, email=email, major=major)
        with self.engine.begin() as conn:
            result = self.queries.execute("insert", TABLE, conn.execute, stmt)
            new_id = result.inserted_primary_key[0]
        return {"id": new_id, "name": name, "email": email, "major": major}

    def update_student(self, student_id: int, name: str, email: str, major: Optional[str]) -> bool:
        stmt = (
            update(students)
            .where(students.c.id == student_id)
            .values(name=name, email=email, major=major)
        )
        with self.engine.begin() as conn:
            result = self.queries.execute("update", TABLE, conn.execute, stmt)
            return result.rowcount > 0

    def delete_student(self, student_id: int) -> bool:
        stmt = delete(students).where(students.c.id == student_id)
        with self.engine.begin() as conn:
            result = self.queries.execute("delete", TABLE, conn.execute, stmt)
            return result.rowcount > 0
