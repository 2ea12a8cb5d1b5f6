"""
Consent storage adapters
SQLAlchemy persistence for services, consent requests, grants and audit entries
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Iterator, Tuple
import structlog
from sqlalchemy import (
    create_engine, case, Column, String, DateTime, Text, Boolean, Integer, JSON, Index, text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import (
    AuditAction,
    ConsentAuditLog,
    ConsentGrant,
    ConsentRequest,
    ConsentRequestFilter,
    ConsentStatus,
    GrantState,
    PageRequest,
    RiskCategory,
    Service,
)
from ..config import get_config
from ..exceptions import AuditFlushError
from ..utils.clock import as_utc

logger = structlog.get_logger(__name__)

Base = declarative_base()


class ServiceDB(Base):
    """SQLAlchemy model for registered services"""
    __tablename__ = "services"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)
    risk_category = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ConsentRequestDB(Base):
    """SQLAlchemy model for consent requests"""
    __tablename__ = "consent_requests"

    id = Column(String, primary_key=True)
    student_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    requested_fields = Column(JSON, nullable=False)
    purpose = Column(Text, nullable=False)
    requested_duration = Column(Integer, nullable=False)
    risk_score = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)

    denied_fields = Column(JSON)
    approved_duration = Column(Integer)
    responded_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ConsentGrantDB(Base):
    """SQLAlchemy model for consent grants"""
    __tablename__ = "consent_grants"
    __table_args__ = (
        # At most one active grant per student/service pair
        Index(
            "uq_consent_grants_active_pair",
            "student_id",
            "service_id",
            unique=True,
            sqlite_where=text("state = 'active'"),
            postgresql_where=text("state = 'active'"),
        ),
    )

    id = Column(String, primary_key=True)
    student_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False)
    approved_fields = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    state = Column(String, nullable=False, index=True)

    revoked_at = Column(DateTime(timezone=True))
    revocation_reason = Column(Text)
    superseded_by = Column(String)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ConsentAuditLogDB(Base):
    """SQLAlchemy model for audit trail entries"""
    __tablename__ = "consent_audit_logs"

    id = Column(String, primary_key=True)
    action = Column(String, nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    service_id = Column(String)
    request_id = Column(String)
    grant_id = Column(String)
    ip_address = Column(String)
    user_agent = Column(Text)
    entry_metadata = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class ConsentStorage:
    """Storage adapter for the consent governance tables"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or get_config().database_url

        engine_kwargs: Dict[str, Any] = {}
        if self.database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                # Share the single in-memory database across sessions
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Session]:
        """Open a session and commit it on success, rolling back on error"""
        try:
            with self.SessionLocal() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("Storage operation failed", operation=operation, error=str(e))
            raise

    @contextmanager
    def session_scope(self, session: Optional[Session], operation: str) -> Iterator[Session]:
        if session is not None:
            yield session
        else:
            with self.transaction(operation) as owned:
                yield owned

    # -------------------------------------------------------------------------
    # Conversions
    # -------------------------------------------------------------------------

    @staticmethod
    def _service_from_db(row: ServiceDB) -> Service:
        return Service(
            id=row.id,
            name=row.name,
            description=row.description,
            risk_category=RiskCategory(row.risk_category),
            is_active=row.is_active,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _request_to_db(request: ConsentRequest) -> ConsentRequestDB:
        return ConsentRequestDB(
            id=request.id,
            student_id=request.student_id,
            service_id=request.service_id,
            requested_fields=list(request.requested_fields),
            purpose=request.purpose,
            requested_duration=request.requested_duration,
            risk_score=request.risk_score,
            status=request.status.value,
            denied_fields=list(request.denied_fields) if request.denied_fields is not None else None,
            approved_duration=request.approved_duration,
            responded_at=request.responded_at,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )

    @staticmethod
    def _request_from_db(row: ConsentRequestDB) -> ConsentRequest:
        return ConsentRequest(
            id=row.id,
            student_id=row.student_id,
            service_id=row.service_id,
            requested_fields=list(row.requested_fields or []),
            purpose=row.purpose,
            requested_duration=row.requested_duration,
            risk_score=row.risk_score,
            status=ConsentStatus(row.status),
            denied_fields=list(row.denied_fields) if row.denied_fields is not None else None,
            approved_duration=row.approved_duration,
            responded_at=as_utc(row.responded_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _grant_to_db(grant: ConsentGrant) -> ConsentGrantDB:
        return ConsentGrantDB(
            id=grant.id,
            student_id=grant.student_id,
            service_id=grant.service_id,
            request_id=grant.request_id,
            approved_fields=list(grant.approved_fields),
            expires_at=grant.expires_at,
            state=grant.state.value,
            revoked_at=grant.revoked_at,
            revocation_reason=grant.revocation_reason,
            superseded_by=grant.superseded_by,
            created_at=grant.created_at,
            updated_at=grant.updated_at,
        )

    @staticmethod
    def _grant_from_db(row: ConsentGrantDB) -> ConsentGrant:
        return ConsentGrant(
            id=row.id,
            student_id=row.student_id,
            service_id=row.service_id,
            request_id=row.request_id,
            approved_fields=list(row.approved_fields or []),
            expires_at=as_utc(row.expires_at),
            state=GrantState(row.state),
            revoked_at=as_utc(row.revoked_at),
            revocation_reason=row.revocation_reason,
            superseded_by=row.superseded_by,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _audit_from_db(row: ConsentAuditLogDB) -> ConsentAuditLog:
        return ConsentAuditLog(
            id=row.id,
            action=AuditAction(row.action),
            student_id=row.student_id,
            service_id=row.service_id,
            request_id=row.request_id,
            grant_id=row.grant_id,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            metadata=row.entry_metadata or {},
            created_at=as_utc(row.created_at),
        )

    # -------------------------------------------------------------------------
    # Services
    # -------------------------------------------------------------------------

    def add_service(self, service: Service) -> Service:
        with self.session_scope(None, "add_service") as session:
            session.add(ServiceDB(
                id=service.id,
                name=service.name,
                description=service.description,
                risk_category=service.risk_category.value,
                is_active=service.is_active,
                created_at=service.created_at,
                updated_at=service.updated_at,
            ))
        logger.info("Stored service", service_id=service.id, name=service.name)
        return service

    def get_service(self, service_id: str, session: Optional[Session] = None) -> Optional[Service]:
        with self.session_scope(session, "get_service") as s:
            row = s.query(ServiceDB).filter_by(id=service_id).first()
            return self._service_from_db(row) if row else None

    def get_service_by_name(self, name: str) -> Optional[Service]:
        with self.session_scope(None, "get_service_by_name") as session:
            row = session.query(ServiceDB).filter_by(name=name).first()
            return self._service_from_db(row) if row else None

    def list_services(self, active_only: bool = False) -> List[Service]:
        with self.session_scope(None, "list_services") as session:
            query = session.query(ServiceDB)
            if active_only:
                query = query.filter(ServiceDB.is_active.is_(True))
            return [self._service_from_db(r) for r in query.order_by(ServiceDB.name).all()]

    def set_service_active(self, service_id: str, is_active: bool,
                           now: datetime) -> Optional[Service]:
        with self.session_scope(None, "set_service_active") as session:
            row = session.query(ServiceDB).filter_by(id=service_id).first()
            if not row:
                return None
            row.is_active = is_active
            row.updated_at = now
            session.flush()
            return self._service_from_db(row)

    # -------------------------------------------------------------------------
    # Consent requests
    # -------------------------------------------------------------------------

    def add_request(self, request: ConsentRequest, session: Optional[Session] = None) -> None:
        with self.session_scope(session, "add_request") as s:
            s.add(self._request_to_db(request))
            s.flush()
        logger.info("Stored consent request", request_id=request.id,
                    student_id=request.student_id, service_id=request.service_id)

    def get_request(self, request_id: str,
                    session: Optional[Session] = None) -> Optional[ConsentRequest]:
        with self.session_scope(session, "get_request") as s:
            row = s.query(ConsentRequestDB).filter_by(id=request_id).first()
            return self._request_from_db(row) if row else None

    def find_pending_request(self, student_id: str, service_id: str,
                             session: Optional[Session] = None) -> Optional[ConsentRequest]:
        with self.session_scope(session, "find_pending_request") as s:
            row = (
                s.query(ConsentRequestDB)
                .filter_by(student_id=student_id, service_id=service_id,
                           status=ConsentStatus.PENDING.value)
                .first()
            )
            return self._request_from_db(row) if row else None

    def update_request_response(self, request: ConsentRequest,
                                expected_status: ConsentStatus,
                                session: Optional[Session] = None) -> bool:
        """
        Persist a student's response if the stored status is still
        ``expected_status``. Returns False when another writer got there first.
        """
        with self.session_scope(session, "update_request_response") as s:
            updated = (
                s.query(ConsentRequestDB)
                .filter(ConsentRequestDB.id == request.id,
                        ConsentRequestDB.status == expected_status.value)
                .update({
                    ConsentRequestDB.status: request.status.value,
                    ConsentRequestDB.denied_fields: request.denied_fields,
                    ConsentRequestDB.approved_duration: request.approved_duration,
                    ConsentRequestDB.responded_at: request.responded_at,
                    ConsentRequestDB.updated_at: request.updated_at,
                }, synchronize_session=False)
            )
            return updated == 1

    def update_request_status(self, request_id: str, status: ConsentStatus,
                              expected: Iterable[ConsentStatus], now: datetime,
                              session: Optional[Session] = None) -> bool:
        """Move a request to ``status`` only from one of the ``expected`` states"""
        with self.session_scope(session, "update_request_status") as s:
            updated = (
                s.query(ConsentRequestDB)
                .filter(ConsentRequestDB.id == request_id,
                        ConsentRequestDB.status.in_([e.value for e in expected]))
                .update({
                    ConsentRequestDB.status: status.value,
                    ConsentRequestDB.updated_at: now,
                }, synchronize_session=False)
            )
            return updated == 1

    def list_requests(self, student_id: str,
                      request_filter: Optional[ConsentRequestFilter] = None,
                      page: Optional[PageRequest] = None) -> Tuple[List[ConsentRequest], int]:
        """Filtered, sorted page of a student's requests plus the total match count"""
        request_filter = request_filter or ConsentRequestFilter()
        page = page or PageRequest()

        with self.session_scope(None, "list_requests") as session:
            query = session.query(ConsentRequestDB).filter_by(student_id=student_id)

            if request_filter.status:
                query = query.filter(
                    ConsentRequestDB.status.in_([s.value for s in request_filter.status])
                )
            if request_filter.service_id:
                query = query.filter(ConsentRequestDB.service_id == request_filter.service_id)
            if request_filter.min_risk_score is not None:
                query = query.filter(ConsentRequestDB.risk_score >= request_filter.min_risk_score)
            if request_filter.max_risk_score is not None:
                query = query.filter(ConsentRequestDB.risk_score <= request_filter.max_risk_score)
            if request_filter.created_after is not None:
                query = query.filter(ConsentRequestDB.created_at >= request_filter.created_after)
            if request_filter.created_before is not None:
                query = query.filter(ConsentRequestDB.created_at <= request_filter.created_before)

            total = query.count()

            column = getattr(ConsentRequestDB, page.sort_by)
            ordering = column.asc() if page.sort_order == "asc" else column.desc()
            rows = (
                query.order_by(ordering, ConsentRequestDB.id.asc())
                .offset((page.page - 1) * page.limit)
                .limit(page.limit)
                .all()
            )
            return [self._request_from_db(r) for r in rows], total

    def list_requests_by_status(self, student_id: str,
                                status: ConsentStatus) -> List[ConsentRequest]:
        with self.session_scope(None, "list_requests_by_status") as session:
            rows = (
                session.query(ConsentRequestDB)
                .filter_by(student_id=student_id, status=status.value)
                .order_by(ConsentRequestDB.created_at.desc())
                .all()
            )
            return [self._request_from_db(r) for r in rows]

    def list_all_requests(self, student_id: str) -> List[ConsentRequest]:
        with self.session_scope(None, "list_all_requests") as session:
            rows = (
                session.query(ConsentRequestDB)
                .filter_by(student_id=student_id)
                .order_by(ConsentRequestDB.created_at.asc())
                .all()
            )
            return [self._request_from_db(r) for r in rows]

    # -------------------------------------------------------------------------
    # Consent grants
    # -------------------------------------------------------------------------

    def add_grant(self, grant: ConsentGrant, session: Optional[Session] = None) -> None:
        with self.session_scope(session, "add_grant") as s:
            s.add(self._grant_to_db(grant))
            s.flush()

    def get_grant(self, grant_id: str,
                  session: Optional[Session] = None) -> Optional[ConsentGrant]:
        with self.session_scope(session, "get_grant") as s:
            row = s.query(ConsentGrantDB).filter_by(id=grant_id).first()
            return self._grant_from_db(row) if row else None

    def supersede_active_grants(self, student_id: str, service_id: str,
                                superseded_by: str, now: datetime,
                                session: Optional[Session] = None) -> List[ConsentGrant]:
        """Move every active grant of the pair to superseded and return them"""
        with self.session_scope(session, "supersede_active_grants") as s:
            rows = (
                s.query(ConsentGrantDB)
                .filter_by(student_id=student_id, service_id=service_id,
                           state=GrantState.ACTIVE.value)
                .all()
            )
            if not rows:
                return []

            ids = [r.id for r in rows]
            (
                s.query(ConsentGrantDB)
                .filter(ConsentGrantDB.id.in_(ids),
                        ConsentGrantDB.state == GrantState.ACTIVE.value)
                .update({
                    ConsentGrantDB.state: GrantState.SUPERSEDED.value,
                    ConsentGrantDB.superseded_by: superseded_by,
                    ConsentGrantDB.updated_at: now,
                }, synchronize_session=False)
            )
            for row in rows:
                s.refresh(row)
            return [self._grant_from_db(r) for r in rows]

    def find_latest_grant(self, student_id: str, service_id: str,
                          states: Iterable[GrantState]) -> Optional[ConsentGrant]:
        """Active grant of the pair if any, otherwise the newest in ``states``"""
        with self.session_scope(None, "find_latest_grant") as session:
            row = (
                session.query(ConsentGrantDB)
                .filter(ConsentGrantDB.student_id == student_id,
                        ConsentGrantDB.service_id == service_id,
                        ConsentGrantDB.state.in_([s.value for s in states]))
                .order_by(
                    case((ConsentGrantDB.state == GrantState.ACTIVE.value, 0), else_=1),
                    ConsentGrantDB.created_at.desc(),
                )
                .first()
            )
            return self._grant_from_db(row) if row else None

    def list_grants(self, student_id: str,
                    states: Optional[Iterable[GrantState]] = None,
                    session: Optional[Session] = None) -> List[ConsentGrant]:
        with self.session_scope(session, "list_grants") as s:
            query = s.query(ConsentGrantDB).filter(ConsentGrantDB.student_id == student_id)
            if states is not None:
                query = query.filter(ConsentGrantDB.state.in_([st.value for st in states]))
            rows = query.order_by(ConsentGrantDB.created_at.desc()).all()
            return [self._grant_from_db(r) for r in rows]

    def revoke_grant(self, grant_id: str, student_id: str, reason: str,
                     now: datetime, session: Optional[Session] = None) -> bool:
        """Compare-and-set revocation; False when the grant was already revoked"""
        with self.session_scope(session, "revoke_grant") as session:
            updated = (
                session.query(ConsentGrantDB)
                .filter(ConsentGrantDB.id == grant_id,
                        ConsentGrantDB.student_id == student_id,
                        ConsentGrantDB.state != GrantState.REVOKED.value)
                .update({
                    ConsentGrantDB.state: GrantState.REVOKED.value,
                    ConsentGrantDB.revoked_at: now,
                    ConsentGrantDB.revocation_reason: reason,
                    ConsentGrantDB.updated_at: now,
                }, synchronize_session=False)
            )
            return updated == 1

    def list_expiry_candidates(self, now: datetime) -> List[ConsentGrant]:
        """Active grants whose expiry time has passed"""
        with self.session_scope(None, "list_expiry_candidates") as session:
            rows = (
                session.query(ConsentGrantDB)
                .filter(ConsentGrantDB.state == GrantState.ACTIVE.value,
                        ConsentGrantDB.expires_at <= now)
                .order_by(ConsentGrantDB.expires_at.asc())
                .all()
            )
            return [self._grant_from_db(r) for r in rows]

    def mark_grant_expired(self, grant_id: str, now: datetime,
                           session: Optional[Session] = None) -> bool:
        """Compare-and-set ACTIVE -> EXPIRED; True only for the caller that flipped it"""
        with self.session_scope(session, "mark_grant_expired") as session:
            updated = (
                session.query(ConsentGrantDB)
                .filter(ConsentGrantDB.id == grant_id,
                        ConsentGrantDB.state == GrantState.ACTIVE.value,
                        ConsentGrantDB.expires_at <= now)
                .update({
                    ConsentGrantDB.state: GrantState.EXPIRED.value,
                    ConsentGrantDB.updated_at: now,
                }, synchronize_session=False)
            )
            return updated == 1

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def store_audit_logs(self, entries: List[ConsentAuditLog]) -> int:
        """
        Persist audit entries, skipping ids that are already stored so a
        retried batch never duplicates rows. Returns the number inserted.

        Raises:
            AuditFlushError: If the batch could not be written
        """
        if not entries:
            return 0

        try:
            with self.session_scope(None, "store_audit_logs") as session:
                ids = [e.id for e in entries]
                existing = {
                    row.id for row in
                    session.query(ConsentAuditLogDB.id)
                    .filter(ConsentAuditLogDB.id.in_(ids)).all()
                }
                stored = 0
                for entry in entries:
                    if entry.id in existing:
                        continue
                    session.add(ConsentAuditLogDB(
                        id=entry.id,
                        action=entry.action.value,
                        student_id=entry.student_id,
                        service_id=entry.service_id,
                        request_id=entry.request_id,
                        grant_id=entry.grant_id,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        entry_metadata=entry.metadata,
                        created_at=entry.created_at,
                    ))
                    existing.add(entry.id)
                    stored += 1
        except SQLAlchemyError as e:
            raise AuditFlushError(entry_count=len(entries)) from e

        logger.debug("Stored audit entries", stored=stored, skipped=len(entries) - stored)
        return stored

    def list_audit_logs(self, student_id: str, limit: int = 50) -> List[ConsentAuditLog]:
        with self.session_scope(None, "list_audit_logs") as session:
            rows = (
                session.query(ConsentAuditLogDB)
                .filter_by(student_id=student_id)
                .order_by(ConsentAuditLogDB.created_at.desc())
                .limit(limit)
                .all()
            )
            return [self._audit_from_db(r) for r in rows]
