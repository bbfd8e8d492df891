"""
Document model - rows backing the SQL document store driver
"""

from sqlalchemy import JSON, BigInteger, Column, DateTime, String

from database import Base


class DocumentRecord(Base):
    """One stored document, addressed by its full slash-separated path"""

    __tablename__ = "documents"

    path = Column(String(1024), primary_key=True)
    collection = Column(String(1024), nullable=False, index=True)
    doc_id = Column(String(255), nullable=False)
    data = Column(JSON, nullable=False)  # datetimes tagged by services.store.codec
    create_time = Column(DateTime(timezone=True), nullable=False)
    update_time = Column(DateTime(timezone=True), nullable=False)
    version = Column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return f"<DocumentRecord(path={self.path}, version={self.version})>"
