import logging
from typing import List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from legalmarket.auth.dependencies import Identity, require_client, require_lawyer, require_owner
from legalmarket.database import transaction
from legalmarket.errors import DuplicateProposal, Forbidden, InvalidState, NotFound, RequestNotOpen, ValidationError
from legalmarket.matching.schemas import (
    LegalRequestCreate,
    ProposalContentPatch,
    ProposalCreate,
    ProposalStats,
    RequestPatch,
)
from legalmarket.models import (
    LegalRequest,
    LegalRequestStatus,
    Proposal,
    ProposalDecision,
    ProposalStatus,
    User,
    UserRole,
    utcnow,
)
from legalmarket.validation import parse

logger = logging.getLogger(__name__)


class MatchingService:
    """Open request -> competing proposals -> a single accepted proposal.

    Accepting a proposal leaves its sibling proposals pending. The request
    moves to in_progress, so no further proposal on it can be accepted, but
    the siblings stay visible to their lawyers until the client rejects them.
    """

    def __init__(self, db: Session):
        self.db = db

    # =====================================================
    # LEGAL REQUESTS
    # =====================================================

    def submit_request(self, identity: Identity, description: str, title: Optional[str] = None) -> LegalRequest:
        require_client(identity)
        data = parse(LegalRequestCreate, title=title, description=description)
        self._get_user(identity.user_id)

        request = LegalRequest(
            client_id=identity.user_id,
            title=data.title,
            description=data.description,
            status=LegalRequestStatus.OPEN,
        )
        with transaction(self.db):
            self.db.add(request)

        logger.info(f"Client {identity.user_id} opened legal request {request.id}")
        return request

    def update_request(
        self,
        identity: Identity,
        request_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LegalRequest:
        require_client(identity)
        patch = parse(RequestPatch, title=title, description=description)
        with transaction(self.db):
            request = self._lock_request(request_id)
            require_owner(identity, request.client_id, "legal request")
            if request.status != LegalRequestStatus.OPEN:
                raise RequestNotOpen(request_id, request.status)

            if patch.title is not None:
                request.title = patch.title
            if patch.description is not None:
                request.description = patch.description
        return request

    def close_request(self, identity: Identity, request_id: str) -> LegalRequest:
        with transaction(self.db):
            request = self._lock_request(request_id)
            if not identity.is_staff:
                require_owner(identity, request.client_id, "legal request")
            if request.status == LegalRequestStatus.CLOSED:
                raise InvalidState("Legal request is already closed", entity="legal_request", status=request.status)

            request.status = LegalRequestStatus.CLOSED
            request.closed_at = utcnow()

        logger.info(f"Legal request {request_id} closed by {identity.user_id}")
        return request

    def get_request(self, request_id: str) -> LegalRequest:
        request = self.db.query(LegalRequest).filter(LegalRequest.id == request_id).first()
        if not request:
            raise NotFound("Legal request", request_id)
        return request

    def list_open_requests(self, page: int = 1, limit: int = 10) -> List[LegalRequest]:
        self._check_page(page, limit)
        return (
            self.db.query(LegalRequest)
            .filter(LegalRequest.status == LegalRequestStatus.OPEN)
            .order_by(LegalRequest.created_at.desc(), LegalRequest.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

    # =====================================================
    # PROPOSALS
    # =====================================================

    def submit_proposal(
        self,
        identity: Identity,
        request_id: str,
        price: int,
        text: str,
        estimated_duration: Optional[str] = None,
    ) -> Proposal:
        require_lawyer(identity)
        data = parse(ProposalCreate, price=price, text=text, estimated_duration=estimated_duration)

        with transaction(self.db):
            request = self._lock_request(request_id)
            if request.status != LegalRequestStatus.OPEN:
                raise RequestNotOpen(request_id, request.status)

            existing = (
                self.db.query(Proposal.id)
                .filter(Proposal.request_id == request_id, Proposal.lawyer_id == identity.user_id)
                .first()
            )
            if existing:
                raise DuplicateProposal(request_id, identity.user_id)

            proposal = Proposal(
                request_id=request_id,
                lawyer_id=identity.user_id,
                price=data.price,
                text=data.text,
                estimated_duration=data.estimated_duration,
                status=ProposalStatus.PENDING,
            )
            self.db.add(proposal)
            try:
                self.db.flush()
            except IntegrityError as exc:
                # Lost the race against a concurrent submission from the same lawyer
                raise DuplicateProposal(request_id, identity.user_id) from exc

        logger.info(f"Lawyer {identity.user_id} proposed {data.price} on request {request_id}")
        return proposal

    def decide_proposal(
        self,
        identity: Identity,
        request_id: str,
        proposal_id: str,
        decision: Union[ProposalDecision, str],
    ) -> Proposal:
        require_client(identity)
        try:
            decision = ProposalDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision}", field="decision")

        with transaction(self.db):
            # The request row lock serializes competing accepts on the same request
            request = self._lock_request(request_id)
            require_owner(identity, request.client_id, "legal request")

            proposal = self._lock_proposal(proposal_id)
            if proposal.request_id != request_id:
                raise InvalidState(
                    "Proposal does not belong to this legal request",
                    entity="proposal",
                    status=proposal.status,
                    request_id=request_id,
                )
            if proposal.status != ProposalStatus.PENDING:
                raise InvalidState("Proposal has already been decided", entity="proposal", status=proposal.status)

            if decision == ProposalDecision.ACCEPT:
                if request.status != LegalRequestStatus.OPEN:
                    raise RequestNotOpen(request_id, request.status)
                if self._accepted_proposal_id(request_id) is not None:
                    raise InvalidState(
                        "Another proposal was already accepted for this request",
                        entity="legal_request",
                        status=request.status,
                    )
                proposal.status = ProposalStatus.ACCEPTED
                request.status = LegalRequestStatus.IN_PROGRESS
            else:
                proposal.status = ProposalStatus.REJECTED
            proposal.decided_at = utcnow()

        logger.info(f"Client {identity.user_id} {proposal.status.value} proposal {proposal_id} on request {request_id}")
        return proposal

    def update_proposal_content(
        self,
        identity: Identity,
        proposal_id: str,
        price: Optional[int] = None,
        text: Optional[str] = None,
        estimated_duration: Optional[str] = None,
    ) -> Proposal:
        require_lawyer(identity)
        patch = parse(ProposalContentPatch, price=price, text=text, estimated_duration=estimated_duration)
        with transaction(self.db):
            proposal = self._lock_proposal(proposal_id)
            require_owner(identity, proposal.lawyer_id, "proposal")
            if proposal.status != ProposalStatus.PENDING:
                raise InvalidState("Only pending proposals can be edited", entity="proposal", status=proposal.status)

            if patch.price is not None:
                proposal.price = patch.price
            if patch.text is not None:
                proposal.text = patch.text
            if patch.estimated_duration is not None:
                proposal.estimated_duration = patch.estimated_duration
        return proposal

    def withdraw_proposal(self, identity: Identity, proposal_id: str) -> None:
        """Delete a pending proposal. Decided proposals are kept for the audit trail."""
        require_lawyer(identity)
        with transaction(self.db):
            proposal = self._lock_proposal(proposal_id)
            require_owner(identity, proposal.lawyer_id, "proposal")
            if proposal.status != ProposalStatus.PENDING:
                raise InvalidState("Only pending proposals can be withdrawn", entity="proposal", status=proposal.status)
            self.db.delete(proposal)

        logger.info(f"Lawyer {identity.user_id} withdrew proposal {proposal_id}")

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.db.query(Proposal).filter(Proposal.id == proposal_id).first()
        if not proposal:
            raise NotFound("Proposal", proposal_id)
        return proposal

    def list_proposals_for_request(self, identity: Identity, request_id: str) -> List[Proposal]:
        request = self.get_request(request_id)
        query = self.db.query(Proposal).filter(Proposal.request_id == request_id)

        if identity.role == UserRole.LAWYER:
            query = query.filter(Proposal.lawyer_id == identity.user_id)
        elif not identity.is_staff and identity.user_id != request.client_id:
            raise Forbidden("Caller does not own this legal request", user_id=identity.user_id)

        return query.order_by(Proposal.submitted_at.asc(), Proposal.id.asc()).all()

    def list_proposals_for_lawyer(self, identity: Identity, page: int = 1, limit: int = 10) -> List[Proposal]:
        require_lawyer(identity)
        self._check_page(page, limit)
        return (
            self.db.query(Proposal)
            .filter(Proposal.lawyer_id == identity.user_id)
            .order_by(Proposal.submitted_at.desc(), Proposal.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

    def get_accepted_proposal(self, request_id: str) -> Optional[Proposal]:
        return (
            self.db.query(Proposal)
            .filter(Proposal.request_id == request_id, Proposal.status == ProposalStatus.ACCEPTED)
            .first()
        )

    def proposal_stats(self) -> ProposalStats:
        counts = dict(
            self.db.query(Proposal.status, func.count(Proposal.id)).group_by(Proposal.status).all()
        )
        average = self.db.query(func.avg(Proposal.price)).scalar()
        return ProposalStats(
            total=sum(counts.values()),
            pending=counts.get(ProposalStatus.PENDING, 0),
            accepted=counts.get(ProposalStatus.ACCEPTED, 0),
            rejected=counts.get(ProposalStatus.REJECTED, 0),
            average_price=float(average) if average is not None else None,
        )

    # =====================================================
    # HELPERS
    # =====================================================

    def _get_user(self, user_id: str) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User", user_id)
        return user

    def _lock_request(self, request_id: str) -> LegalRequest:
        request = (
            self.db.query(LegalRequest)
            .filter(LegalRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not request:
            raise NotFound("Legal request", request_id)
        return request

    def _lock_proposal(self, proposal_id: str) -> Proposal:
        proposal = (
            self.db.query(Proposal)
            .filter(Proposal.id == proposal_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not proposal:
            raise NotFound("Proposal", proposal_id)
        return proposal

    def _accepted_proposal_id(self, request_id: str) -> Optional[str]:
        row = (
            self.db.query(Proposal.id)
            .filter(Proposal.request_id == request_id, Proposal.status == ProposalStatus.ACCEPTED)
            .first()
        )
        return row[0] if row else None

    @staticmethod
    def _check_page(page: int, limit: int) -> None:
        if page < 1:
            raise ValidationError("page must be positive", field="page")
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", field="limit")
