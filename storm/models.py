from sqlalchemy import Column, Integer, String, Enum, ForeignKey, Boolean, DateTime, Text, CheckConstraint
from sqlalchemy.orm import declarative_base, relationship
from dataclasses import dataclass
from datetime import datetime
import enum

Base = declarative_base()

# ============================================================================
# ENUM DEFINITIONS
# ============================================================================

class AccountRole(str, enum.Enum):
    """Account role inside its enterprise"""
    OWNER = "owner"
    ADMIN = "admin"
    GENERAL = "general"

    @property
    def is_owner(self) -> bool:
        return self is AccountRole.OWNER


class TransferDirection(str, enum.Enum):
    """Direction of a storm transfer job"""
    TO_PRIMARY = "to_primary"
    TO_STORM = "to_storm"


class TransferState(str, enum.Enum):
    """Transfer job lifecycle state"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, enum.Enum):
    """Storm event log types"""
    STORM_USER_CREATE = "storm_user_create"
    STORM_USER_DESTROY = "storm_user_destroy"
    STORM_USER_UPDATE = "storm_user_update"
    STORM_USERS_BULK_UPDATE = "storm_users_bulk_update"
    STORM_USERS_BULK_DIVERGED = "storm_users_bulk_diverged"
    TRANSFER_REQUESTED = "transfer_requested"
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_FAILED = "transfer_failed"
    REGISTRY_RECONCILED = "registry_reconciled"


@dataclass(frozen=True)
class StormSettings:
    """Storm section of the enterprise settings"""
    enabled: bool
    default_bandrate: int

    def as_dict(self) -> dict:
        return {"enable": self.enabled, "default_bandrate": self.default_bandrate}

# ============================================================================
# CORE MODEL DEFINITIONS
# ============================================================================

class Enterprise(Base):
    """Tenant owning accounts, with the storm feature flag and quota"""
    __tablename__ = "enterprises"
    __table_args__ = (
        CheckConstraint("registered_storm_accounts >= 0", name="ck_registered_non_negative"),
        CheckConstraint("max_storm_accounts >= 0", name="ck_max_non_negative"),
        CheckConstraint("default_bandrate >= 0", name="ck_default_bandrate_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)

    # Storm settings
    storm_enabled = Column(Boolean, nullable=False, default=False)
    default_bandrate = Column(Integer, nullable=False, default=0)

    # Quota (derived from the contract by an outside party)
    max_storm_accounts = Column(Integer, nullable=False, default=0)
    registered_storm_accounts = Column(Integer, nullable=False, default=0)  # Denormalized count of storm_accounts

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    accounts = relationship("Account", back_populates="enterprise")
    storm_accounts = relationship("StormAccount", back_populates="enterprise")

    @property
    def storm_settings(self) -> StormSettings:
        return StormSettings(
            enabled=bool(self.storm_enabled),
            default_bandrate=int(self.default_bandrate or 0),
        )


class Account(Base):
    """User account of an enterprise"""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True)
    enterprise_id = Column(Integer, ForeignKey("enterprises.id"), nullable=False)
    name = Column(String, nullable=False)
    role = Column(Enum(AccountRole), nullable=False, default=AccountRole.GENERAL)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    enterprise = relationship("Enterprise", back_populates="accounts")
    storm_account = relationship("StormAccount", back_populates="account", uselist=False)


class StormServer(Base):
    """Storm provisioning endpoint with its transfer staging area"""
    __tablename__ = "storm_servers"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    endpoint = Column(String, nullable=False)  # Base URL of the provisioning service
    staging_root = Column(String, nullable=False)  # Absolute path for in-flight transfers

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    storm_accounts = relationship("StormAccount", back_populates="storm_server")


class StormAccount(Base):
    """Account identity registered on a storm server"""
    __tablename__ = "storm_accounts"
    __table_args__ = (
        CheckConstraint("bandrate >= 0", name="ck_bandrate_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), unique=True, nullable=False)
    enterprise_id = Column(Integer, ForeignKey("enterprises.id"), nullable=False, index=True)
    storm_server_id = Column(Integer, ForeignKey("storm_servers.id"), nullable=False)

    name = Column(String, unique=True, nullable=False)  # Login name on the storm server
    remote_user_id = Column(String, nullable=False)  # Opaque id returned by the remote service
    bandrate = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    account = relationship("Account", back_populates="storm_account")
    enterprise = relationship("Enterprise", back_populates="storm_accounts")
    storm_server = relationship("StormServer", back_populates="storm_accounts")

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "account_id": self.account_id,
            "storm_server_id": self.storm_server_id,
            "user_id": self.remote_user_id,
            "bandrate": self.bandrate,
        }


class StormEvent(Base):
    """Audit trail of storm account changes and transfer outcomes"""
    __tablename__ = "storm_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(Enum(EventType), nullable=False)
    message = Column(Text, nullable=False)

    # Context references (plain ids; rows may be gone when the event is read)
    enterprise_id = Column(Integer)
    account_id = Column(Integer)
    job_id = Column(String)

    timestamp = Column(DateTime, default=datetime.utcnow)
