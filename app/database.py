from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from app.config import DATABASE_URL

# Default is a local sqlite file; point DATABASE_URL at postgres in deployment.
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass

def dialect_insert(session, model):
	"""INSERT construct supporting ``on_conflict_do_update`` for the bound dialect."""
	dialect = session.get_bind().dialect.name
	if dialect == "postgresql":
		from sqlalchemy.dialects.postgresql import insert
	elif dialect == "sqlite":
		from sqlalchemy.dialects.sqlite import insert
	else:
		raise NotImplementedError(f"Upserts are not supported on {dialect}")
	return insert(model)
