"""
Database models and schema for the invoice intake service
"""
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, DateTime, JSON, Text, ForeignKey, Index
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from core.config.config import Config
from core.utils.helpers import duration_ms

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _group_defaults() -> dict:
    return Config.load_defaults().get('whatsapp_group', {})


def default_trigger_keywords() -> List[str]:
    return list(_group_defaults().get('trigger_keywords', []))


def default_allowed_file_types() -> List[str]:
    return list(_group_defaults().get('allowed_file_types', []))


def default_group_stats() -> dict:
    return {
        'totalMessages': 0,
        'processedMessages': 0,
        'successfulExtractions': 0,
        'failedExtractions': 0,
        'lastMessageDate': None,
    }


class WhatsAppGroup(Base):
    """Connected WhatsApp group whose messages can produce invoices"""
    __tablename__ = 'whatsapp_groups'

    id = Column(String(36), primary_key=True, default=_uuid)
    group_id = Column(String, nullable=False, unique=True)
    group_name = Column(String, nullable=False)
    group_description = Column(Text)

    is_active = Column(Boolean, default=True, nullable=False)

    # Processing settings
    trigger_keywords = Column(JSON, default=default_trigger_keywords)
    auto_process_attachments = Column(Boolean, default=True, nullable=False)
    allowed_file_types = Column(JSON, default=default_allowed_file_types)
    max_file_size = Column(Integer, default=lambda: int(_group_defaults().get('max_file_size', Config.MAX_FILE_SIZE)))

    # Webhook configuration
    webhook_url = Column(String)
    webhook_secret = Column(String)

    # Running counters: totalMessages, processedMessages, successfulExtractions,
    # failedExtractions, lastMessageDate
    stats = Column(JSON, default=default_group_stats)

    connected_by = Column(String, index=True)
    last_activity_at = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    invoices = relationship('Invoice', back_populates='whatsapp_group')

    __table_args__ = (
        Index('ix_whatsapp_groups_active_created', 'is_active', 'created_at'),
    )

    def matched_keywords(self, message: Optional[str]) -> List[str]:
        """Trigger keywords contained in the message (case-insensitive)"""
        text = (message or '').lower()
        return [keyword for keyword in (self.trigger_keywords or []) if keyword.lower() in text]

    def has_keyword(self, message: Optional[str]) -> bool:
        return bool(self.matched_keywords(message))

    def _bump(self, counter: str, amount: int = 1, **extra) -> None:
        # JSON columns only see reassignment, never in-place mutation
        current = {**default_group_stats(), **(self.stats or {})}
        current[counter] = (current.get(counter) or 0) + amount
        current.update(extra)
        self.stats = current

    def increment_message_count(self, message_date: Optional[datetime] = None) -> None:
        now = datetime.utcnow()
        self._bump('totalMessages', lastMessageDate=(message_date or now).isoformat())
        self.last_activity_at = now

    def increment_processed_count(self) -> None:
        self._bump('processedMessages')
        self.last_activity_at = datetime.utcnow()

    def increment_success_count(self, amount: int = 1) -> None:
        self._bump('successfulExtractions', amount)

    def increment_failed_count(self, amount: int = 1) -> None:
        self._bump('failedExtractions', amount)

    def __repr__(self):
        return f"<WhatsAppGroup(group_id={self.group_id}, active={self.is_active})>"


class Invoice(Base):
    """Main invoice table"""
    __tablename__ = 'invoices'

    id = Column(String(36), primary_key=True, default=_uuid)

    # File information
    original_filename = Column(String, nullable=False)
    file_type = Column(String(16), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_url = Column(String)

    # Status: uploaded, processing, processed, failed, validated
    status = Column(String(16), nullable=False, default='uploaded')
    # Origin: upload, whatsapp, email
    source = Column(String(16), nullable=False, index=True)

    # WhatsApp origin
    whatsapp_group_id = Column(String, ForeignKey('whatsapp_groups.group_id'), index=True)
    whatsapp_message_id = Column(String)
    whatsapp_sender = Column(String)
    whatsapp_media_id = Column(String)

    # Extraction results
    extracted_data = Column(JSON, default=dict)
    confidence_scores = Column(JSON, default=dict)

    # Processing bookkeeping
    n8n_workflow_id = Column(String)
    n8n_execution_id = Column(String)
    processing_start_time = Column(DateTime)
    processing_end_time = Column(DateTime)
    processing_errors = Column(JSON, default=list)
    retry_count = Column(Integer, nullable=False, default=0)

    # Validation
    is_validated = Column(Boolean, nullable=False, default=False)
    validation_errors = Column(JSON, default=list)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    whatsapp_group = relationship('WhatsAppGroup', back_populates='invoices')

    __table_args__ = (
        Index('ix_invoices_status_created', 'status', 'created_at'),
    )

    def start_processing(self, when: Optional[datetime] = None) -> None:
        self.processing_start_time = when or datetime.utcnow()
        self.processing_end_time = None

    def finish_processing(self, when: Optional[datetime] = None) -> None:
        """Stamp the end time, never earlier than the start time"""
        end = when or datetime.utcnow()
        if self.processing_start_time and end < self.processing_start_time:
            end = self.processing_start_time
        self.processing_end_time = end

    def add_processing_error(self, message: str) -> None:
        self.processing_errors = [*(self.processing_errors or []), message]

    def processing_time_ms(self) -> Optional[int]:
        return duration_ms(self.processing_start_time, self.processing_end_time)

    def __repr__(self):
        return f"<Invoice(id={self.id}, status={self.status}, source={self.source})>"


# Engine / session management

_engines = {}


def get_engine(database_url: Optional[str] = None):
    """Return a cached engine for the database URL"""
    database_url = database_url or Config.DATABASE_URL
    engine = _engines.get(database_url)
    if engine is None:
        connect_args = {'check_same_thread': False} if database_url.startswith('sqlite') else {}
        engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
        _engines[database_url] = engine
    return engine


def init_db(database_url: Optional[str] = None):
    """Initialize database and create tables"""
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


def get_session(database_url: Optional[str] = None):
    """Get database session"""
    Session = sessionmaker(bind=get_engine(database_url), expire_on_commit=False)
    return Session()
