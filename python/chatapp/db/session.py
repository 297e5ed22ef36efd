"""Session handling for the SQL tree store.

Every tree write is a short unit of work: open a session, replace the rows of
one subtree, commit. Reads use a plain session from the same factory.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from chatapp.db.engine import get_engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory bound to engine (the process-wide engine if None).

    Objects stay usable after commit so leaf rows can be read back without a
    refresh.
    """
    return sessionmaker(
        bind=engine or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def write_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Open a session for one unit of work.

    Commits when the block finishes, rolls back and re-raises on any error,
    and always closes the session.

    Usage:
        with write_session(factory) as db:
            db.execute(delete(TreeNode).where(...))
            db.add(TreeNode(path=..., value=...))
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
