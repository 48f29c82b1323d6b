from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Company(Base):
    """Tenant owning products and design templates."""

    __tablename__ = "companies"
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True, unique=True, index=True)
    secret_salt = Column(String(128), nullable=False)  # mixed into product hashes
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), index=True
    )

    products = relationship(
        "Product", back_populates="company", cascade="all, delete-orphan"
    )
    design_templates = relationship(
        "DesignTemplate", back_populates="company", cascade="all, delete-orphan"
    )


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("company_id", "product_id", name="uq_company_product"),
    )
    id = Column(Integer, primary_key=True)
    company_id = Column(
        Integer,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(String(100), nullable=False)  # company-facing identifier
    name = Column(String(255), nullable=True)
    serial_number = Column(String(100), nullable=True, index=True)
    batch_number = Column(String(100), nullable=True, index=True)
    manufacturing_date = Column(String(32), nullable=True)
    qr_hash = Column(String(64), nullable=False, unique=True, index=True)
    anchor_status = Column(
        String(32), default="pending", nullable=False
    )  # pending, anchored, failed
    ledger_transaction_id = Column(String(128), nullable=True)
    ledger_topic_id = Column(String(64), nullable=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), index=True
    )

    company = relationship("Company", back_populates="products")


class DesignTemplate(Base):
    __tablename__ = "design_templates"
    id = Column(Integer, primary_key=True)
    company_id = Column(
        Integer,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(200), nullable=False)
    template_url = Column(Text, nullable=True)
    qr_placement = Column(JSON, nullable=False)  # {x, y, width, height}
    placeholder_color = Column(String(16), nullable=True)
    placeholder_text = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), index=True
    )
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    company = relationship("Company", back_populates="design_templates")
