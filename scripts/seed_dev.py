from datetime import datetime, timedelta, timezone

from instantwin.db.engine import get_sessionmaker, make_engine
from instantwin.models import Base
from instantwin.workflows import add_prize, create_campaign, create_ticket


def main() -> None:
    """Seed the development database with a demo campaign."""
    engine = make_engine()

    # Drop and recreate all tables for a clean reset of the schema.
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)

    now = datetime.now(timezone.utc)

    with Session.begin() as session:
        # Open campaign: 3 draws per user, one hour apart
        campaign = create_campaign(
            session,
            "Autumn Instant Win",
            overall_win_probability=30,
            participation_limit_per_user=3,
            participation_interval_hours=1,
            prevent_duplicate_prizes=True,
            application_start=now - timedelta(days=1),
            application_end=now + timedelta(days=30),
            questionnaire_fields=[
                {"id": "age", "question": "Age group", "type": "select",
                 "options": ["10s", "20s", "30s", "40s+"], "required": True},
            ],
            description="Demo campaign seeded for local development.",
        )
        add_prize(
            session,
            campaign,
            "mail-delivery",
            "grand",
            "Team jersey",
            rank="1st",
            probability=5,
            stock=3,
            shipping_fields=[
                {"id": "name", "label": "Name", "required": True},
                {"id": "postal_code", "label": "Postal code", "required": True},
                {"id": "address", "label": "Address", "required": True},
                {"id": "phone", "label": "Phone", "required": False},
            ],
        )
        add_prize(
            session,
            campaign,
            "url",
            "wallpaper",
            "Digital wallpaper",
            rank="2nd",
            probability=25,
            urls=[f"https://example.com/wallpaper/{i:03d}" for i in range(1, 21)],
        )
        add_prize(
            session,
            campaign,
            "e-coupon",
            "drink",
            "Free drink coupon",
            rank="3rd",
            probability=70,
            stock=100,
            available_stores=["Station Store", "Stadium Store"],
            coupon_usage_limit=2,
            prevent_reusing_at_same_store=True,
            valid_to=now + timedelta(days=60),
        )
        add_prize(
            session,
            campaign,
            "e-coupon",
            "thanks",
            "5% off coupon",
            unlimited_stock=True,
            is_consolation=True,
        )

        # Ticket-gated campaign
        gated = create_campaign(
            session,
            "Stadium QR Campaign",
            require_ticket=True,
            out_of_stock_behavior="prevent_participation",
        )
        add_prize(
            session, gated, "e-coupon", "snack", "Snack coupon", probability=1, stock=50
        )
        ticket = create_ticket(session, gated, "Gate A", chances_to_grant=3)

    print(f"Seeded campaigns {campaign.id} and {gated.id}; ticket token: {ticket.token}")


if __name__ == "__main__":
    main()
