"""
WhatsApp Integration Models
Database model for a tenant's connected WhatsApp instance
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from .database import Base
from .models import generate_uuid


class WhatsAppConnection(Base):
    """Messaging channel used by the relay to deliver tenant notifications"""

    __tablename__ = "whatsapp_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, unique=True)
    instance_name = Column(String(255), nullable=False)
    whatsapp_number = Column(String(30), nullable=True)
    whatsapp_connected = Column(Boolean, default=False, nullable=False)
    connected_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
