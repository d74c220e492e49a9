from dataclasses import dataclass

from sqlalchemy import BigInteger, Column, Index, Integer, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class LogEntry(Base):
    __tablename__ = "log"
    # INTEGER PRIMARY KEY is SQLite's rowid alias, i.e. storage order
    id     = Column(Integer, primary_key=True)
    ts     = Column(BigInteger, nullable=False)
    device = Column(Text, nullable=False)
    msg    = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_log_ts", "ts"),
        Index("ix_log_device_ts", "device", "ts"),
    )


@dataclass(frozen=True)
class LogRecord:
    """One line read from one device, stamped with its capture time in ms."""
    timestamp: int
    device: str
    message: str

    def to_dict(self):
        return {"ts": self.timestamp, "device": self.device, "msg": self.message}
