"""Database connection and session management."""
from decimal import Decimal
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator
import logging

from config import DATABASE_URL
from models import Base, Product, User

logger = logging.getLogger(__name__)

if DATABASE_URL.startswith("sqlite"):
    # Local runs and tests; TestClient serves requests from worker threads
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False}
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    # Create engine with connection pool settings
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,  # Overflow for checkout bursts
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_timeout=30,  # Wait max 30 seconds for a connection
        echo_pool=False
    )

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    # Seed data if empty
    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(name="Napa Extra 500mg", slug="napa-extra-500mg",
                        price_regular=Decimal("30.00"), price_offer=Decimal("27.00"), stock=500),
                Product(name="Digital Thermometer", slug="digital-thermometer",
                        price_regular=Decimal("350.00"), stock=80),
                Product(name="Blood Pressure Monitor", slug="blood-pressure-monitor",
                        price_regular=Decimal("3200.00"), price_offer=Decimal("2899.00"), stock=25),
                Product(name="Hand Sanitizer 250ml", slug="hand-sanitizer-250ml",
                        price_regular=Decimal("120.00"), stock=300),
                Product(name="Face Mask (50 pcs)", slug="face-mask-50",
                        price_regular=Decimal("250.00"), price_offer=Decimal("0.00"), stock=150),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with sample products")

        if db.query(User).count() == 0:
            users = [
                User(id="user-customer-1", name="Demo Customer", phone="01700000001",
                     email="customer@example.com", role="customer"),
                User(id="user-customer-2", name="Test Customer", phone="01700000002",
                     email="test@example.com", role="customer"),
                User(id="user-admin-1", name="Store Admin", phone="01700000009",
                     email="admin@example.com", role="admin"),
            ]
            db.add_all(users)
            db.commit()
            logger.info("Seeded database with demo users")
    finally:
        db.close()
