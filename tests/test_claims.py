from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from instantwin.claims import GrantSource, claim
from instantwin.draw import DrawOrchestrator
from instantwin.errors import (
    ApprovalPending,
    ApprovalRequired,
    CampaignNotFound,
    IncompleteForm,
    InvalidIdentity,
    InvalidGrantSource,
    RequestAlreadySubmitted,
    TicketRequired,
    ValidationError,
)
from instantwin.models import Base, ClaimedGrant, ParticipationTicket
from instantwin.workflows import (
    add_prize,
    claim_event_token,
    claim_ticket,
    create_campaign,
    create_ticket,
    get_balance,
    grant_extra_chances,
    issue_event_token,
    reset_extra_chances,
    review_participation_request,
    submit_participation_request,
)


class ClaimTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )
        self.now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _available(self, campaign_id: int, user_id: str):
        return get_balance(self.Session, campaign_id, user_id).available

    def test_ticket_claim_is_idempotent(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Tickets", require_ticket=True)
            ticket = create_ticket(session, campaign, "Gate", chances_to_grant=2)

        first = claim_ticket(self.Session, campaign.id, "u1", ticket.token)
        again = claim(self.Session, campaign.id, "u1", GrantSource.ticket(ticket.token))
        self.assertEqual(first.chances_granted, 2)
        self.assertFalse(first.already_claimed)
        self.assertTrue(again.already_claimed)
        self.assertEqual(again.source_key, first.source_key)
        self.assertEqual(self._available(campaign.id, "u1"), 2)

        claim_ticket(self.Session, campaign.id, "u2", ticket.token)
        with self.Session() as session:
            usage = session.scalar(
                select(ParticipationTicket.usage_count).where(ParticipationTicket.id == ticket.id)
            )
        self.assertEqual(usage, 2)

    def test_ticket_without_amount_uses_campaign_limit(self) -> None:
        with self.Session.begin() as session:
            limited = create_campaign(
                session, "Limited", require_ticket=True, participation_limit_per_user=4
            )
            open_ended = create_campaign(session, "Open", require_ticket=True)
            limited_ticket = create_ticket(session, limited, "A")
            open_ticket = create_ticket(session, open_ended, "B")

        self.assertEqual(
            claim_ticket(self.Session, limited.id, "u1", limited_ticket.token).chances_granted, 4
        )
        self.assertEqual(
            claim_ticket(self.Session, open_ended.id, "u1", open_ticket.token).chances_granted, 1
        )

    def test_invalid_tickets(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Tickets", require_ticket=True)
            ticket = create_ticket(session, campaign, "Gate")
            ticket.active = False

        with self.assertRaises(InvalidGrantSource):
            claim_ticket(self.Session, campaign.id, "u1", "no-such-token")
        with self.assertRaises(InvalidGrantSource):
            claim_ticket(self.Session, campaign.id, "u1", ticket.token)
        with self.assertRaises(CampaignNotFound):
            claim_ticket(self.Session, 999, "u1", ticket.token)
        with self.Session() as session:
            self.assertEqual(session.scalars(select(ClaimedGrant)).all(), [])

    def test_event_token_single_use_and_expiry(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session,
                "Event",
                require_ticket=True,
                event_mode_enabled=True,
                event_chances_to_grant=2,
            )
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        token = issue_event_token(self.Session, campaign.id, now=self.now)
        self.assertEqual(token.chances, 2)
        self.assertEqual(token.expires_at, self.now + timedelta(seconds=30))

        result = claim_event_token(
            self.Session, campaign.id, "u1", token.token, now=self.now + timedelta(seconds=5)
        )
        self.assertEqual(result.chances_granted, 2)
        self.assertTrue(
            claim_event_token(self.Session, campaign.id, "u1", token.token).already_claimed
        )
        with self.assertRaises(InvalidGrantSource):
            claim_event_token(self.Session, campaign.id, "u2", token.token)

        # an event token stands in for a ticket
        orchestrator = DrawOrchestrator(self.Session)
        self.assertEqual(len(orchestrator.participate(campaign.id, "u1", use_multiple=True)), 2)

        stale = issue_event_token(self.Session, campaign.id, now=self.now)
        with self.assertRaises(InvalidGrantSource):
            claim_event_token(
                self.Session, campaign.id, "u3", stale.token, now=self.now + timedelta(seconds=31)
            )
        with self.assertRaises(TicketRequired):
            orchestrator.participate(campaign.id, "u3")

    def test_event_mode_must_be_enabled(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Plain")
        with self.assertRaises(InvalidGrantSource):
            issue_event_token(self.Session, campaign.id)

    def test_approval_flow(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session,
                "Approval",
                require_form_approval=True,
                participation_limit_per_user=2,
                approval_form_fields=[
                    {"id": "name", "label": "Name", "required": True},
                    {"id": "note", "label": "Note"},
                ],
            )
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        orchestrator = DrawOrchestrator(self.Session)
        with self.assertRaises(ApprovalRequired):
            orchestrator.participate(campaign.id, "u1")

        with self.assertRaises(IncompleteForm):
            submit_participation_request(self.Session, campaign.id, "u1", {"note": "hi"})
        request = submit_participation_request(self.Session, campaign.id, "u1", {"name": "Ada"})
        with self.assertRaises(RequestAlreadySubmitted):
            submit_participation_request(self.Session, campaign.id, "u1", {"name": "Ada"})
        with self.assertRaises(ApprovalPending):
            orchestrator.participate(campaign.id, "u1")

        reviewed = review_participation_request(
            self.Session, request.id, approve=True, reviewer="admin"
        )
        self.assertEqual(reviewed.status, "approved")
        self.assertEqual(reviewed.chances_granted, 2)
        self.assertEqual(self._available(campaign.id, "u1"), 2)

        # approving twice grants once
        review_participation_request(self.Session, request.id, approve=True)
        again = claim(self.Session, campaign.id, "u1", GrantSource.request(request.id))
        self.assertTrue(again.already_claimed)
        self.assertEqual(self._available(campaign.id, "u1"), 2)
        self.assertEqual(len(orchestrator.participate(campaign.id, "u1", use_multiple=True)), 2)

    def test_rejected_request_can_be_resubmitted(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Approval", require_form_approval=True)

        request = submit_participation_request(self.Session, campaign.id, "u1", {})
        rejected = review_participation_request(self.Session, request.id, approve=False)
        self.assertEqual(rejected.status, "rejected")
        self.assertEqual(self._available(campaign.id, "u1"), 0)
        with self.assertRaises(ApprovalRequired):
            DrawOrchestrator(self.Session).participate(campaign.id, "u1")
        with self.assertRaises(ValidationError):
            review_participation_request(self.Session, request.id, approve=True)

        retry = submit_participation_request(self.Session, campaign.id, "u1", {})
        self.assertEqual(retry.status, "pending")

    def test_admin_grant_and_reset(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Admin", participation_limit_per_user=1)

        self.assertEqual(grant_extra_chances(self.Session, campaign.id, "u1", 3), 3)
        self.assertEqual(grant_extra_chances(self.Session, campaign.id, "u1", 1), 4)
        self.assertEqual(self._available(campaign.id, "u1"), 5)
        with self.assertRaises(ValidationError):
            grant_extra_chances(self.Session, campaign.id, "u1", 0)

        self.assertEqual(reset_extra_chances(self.Session, campaign.id, "u1"), 4)
        self.assertEqual(self._available(campaign.id, "u1"), 1)
        self.assertEqual(reset_extra_chances(self.Session, campaign.id, "nobody"), 0)

    def test_claims_require_a_user_id(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Tickets", require_ticket=True)
            ticket = create_ticket(session, campaign, "Gate")

        with self.assertRaises(InvalidIdentity):
            claim_ticket(self.Session, campaign.id, None, ticket.token)
        with self.assertRaises(InvalidIdentity):
            claim(self.Session, campaign.id, "", GrantSource.ticket(ticket.token))
        with self.assertRaises(InvalidIdentity):
            grant_extra_chances(self.Session, campaign.id, "  ", 1)
        with self.assertRaises(InvalidIdentity):
            reset_extra_chances(self.Session, campaign.id, None)
        with self.Session() as session:
            self.assertEqual(session.scalars(select(ClaimedGrant)).all(), [])
            usage = session.scalar(
                select(ParticipationTicket.usage_count).where(ParticipationTicket.id == ticket.id)
            )
        self.assertEqual(usage, 0)


if __name__ == "__main__":
    unittest.main()
