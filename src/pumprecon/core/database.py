from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL
from .models import Base

engine = create_engine(DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind=None):
    Base.metadata.create_all(bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
