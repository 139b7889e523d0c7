# app/models.py
from sqlalchemy import Column, BigInteger, Integer, String, Double, JSON, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.db import Base


class PmReading(Base):
    __tablename__ = "pm_readings"
    __table_args__ = (
        # กันบันทึกซ้ำเมื่อ cron เรียก collect หลายครั้งในรอบเดียวกัน
        UniqueConstraint("node_id", "timestamp", name="uq_pm_readings_node_timestamp"),
        Index("idx_pm_readings_timestamp", "timestamp"),
    )

    # SQLite ต้องเป็น INTEGER PRIMARY KEY ถึงจะ autoincrement ได้
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    node_id = Column(Integer, nullable=False, index=True)
    node_name = Column(String(255), nullable=True)
    timestamp = Column(BigInteger, nullable=False)         # epoch seconds
    datetime_local = Column(String(32), nullable=True)     # "YYYY-MM-DD HH:mm:ss" UTC+7

    pm25 = Column(Double, nullable=True)
    pm10 = Column(Double, nullable=True)
    pm1 = Column(Double, nullable=True)

    raw = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
