from datetime import date, datetime, timedelta
from random import choice, randint, random, uniform

from faker import Faker
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .logging_config import get_logger
from .models import Customer, EmailMessage, Invoice, InvoiceStatus, UsageRecord

fake = Faker()
logger = get_logger(__name__)

TARGET_CUSTOMERS = 40
HISTORY_MONTHS = 12

PLANS = {
    # plan: (monthly base price, included pageviews)
    "starter": (99.0, 500_000),
    "growth": (299.0, 2_000_000),
    "business": (899.0, 8_000_000),
}
# add-ons, billed inside the invoice amount
BUILDER_SEAT_PRICE = 25.0
SUPPORT_PRICE = 150.0

PERSONAS = ("steady", "growing", "churning", "overage_heavy")

NEUTRAL_SNIPPETS = [
    "Thanks for the quick reply, all good on our side.",
    "Could you send the invoice for last month again?",
    "We are planning a campaign next quarter.",
]
SOFT_SNIPPETS = [
    "We noticed an error on the dashboard this morning.",
    "There is a problem with the cache purge endpoint.",
    "Another issue with slow responses in Europe.",
]
HARD_SNIPPETS = [
    "If this is not fixed our lawyer will contact you.",
    "We are considering legal action over the duplicated charges.",
]


def _month_start(d: date, back: int) -> date:
    """First day of the month `back` months before `d`."""
    year, month = d.year, d.month - back
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


def _persona_params(persona: str) -> dict:
    """
    Controls how a persona's usage and payments evolve over the history.
    growth: per-month multiplicative pageview drift
    p_paid: chance an invoice is settled
    delay:  payment delay range in days
    """
    return {
        "steady":        dict(growth=(0.98, 1.03), p_paid=0.97, delay=(-5, 4),  overage=(0.0, 0.08), complaint=0.05),
        "growing":       dict(growth=(1.05, 1.15), p_paid=0.9,  delay=(-2, 10), overage=(0.1, 0.3),  complaint=0.1),
        "churning":      dict(growth=(0.75, 0.92), p_paid=0.6,  delay=(10, 45), overage=(0.0, 0.05), complaint=0.4),
        "overage_heavy": dict(growth=(1.0, 1.08),  p_paid=0.85, delay=(0, 15),  overage=(0.45, 0.7), complaint=0.2),
    }[persona]


def _invoice_status(months_ago: int, p_paid: float) -> str:
    if months_ago == 0 and random() < 0.5:
        return InvoiceStatus.open.value
    if random() < p_paid:
        return InvoiceStatus.paid.value
    return InvoiceStatus.overdue.value


def _seed_customer(db: Session, today: date) -> None:
    company = fake.unique.company()
    domain = fake.unique.domain_name()
    c = Customer(name=company, email=f"billing@{domain}")
    db.add(c)
    db.flush()  # get c.id without full commit

    persona = choice(PERSONAS)
    P = _persona_params(persona)
    plan = choice(list(PLANS))
    base_price, included = PLANS[plan]

    pageviews = float(randint(int(included * 0.4), int(included * 1.1)))
    requests_per_pv = uniform(3, 12) if random() > 0.1 else uniform(22, 60)
    bytes_per_pv = uniform(0.5, 3.0) * 1024 ** 2
    seats = randint(0, 4) or None
    support = SUPPORT_PRICE if random() < 0.3 else 0.0

    # Walk from the oldest month to the newest
    for back in range(HISTORY_MONTHS - 1, -1, -1):
        ref = _month_start(today, back)
        pageviews = max(1_000.0, pageviews * uniform(*P["growth"]))
        pv = int(pageviews)
        req = int(pv * requests_per_pv)
        bw = pv * bytes_per_pv

        db.add(UsageRecord(
            customer_id=c.id,
            reference_month=ref,
            pageviews=pv,
            requests=req,
            bandwidth=bw,
            plan=plan,
            request_pageview_ratio=round(req / pv, 2),
            bw_per_10k_pageviews=round(bw / pv * 10_000, 2),
        ))

        overage_share = uniform(*P["overage"])
        overage = round(base_price * overage_share / max(0.01, 1 - overage_share), 2)
        seat_cost = (seats or 0) * BUILDER_SEAT_PRICE
        amount = round(base_price + overage + seat_cost + support, 2)
        status = _invoice_status(back, P["p_paid"])
        due = ref + timedelta(days=randint(10, 20))
        paid = due + timedelta(days=randint(*P["delay"])) if status == InvoiceStatus.paid.value else None

        # Tier simulation: cheaper only when the customer pays heavy overage
        tiers = [round(amount * uniform(0.7, 1.2), 2) for _ in range(3)]

        db.add(Invoice(
            customer_id=c.id,
            amount=amount,
            status=status,
            due_date=due,
            paid_date=paid,
            reference_month=ref,
            plan=plan,
            extra_pageviews_price=round(overage * 0.6, 2),
            extra_req_price=round(overage * 0.25, 2),
            extra_bw_price=round(overage - round(overage * 0.6, 2) - round(overage * 0.25, 2), 2),
            seats_builders=seats,
            seats_builder_cost=seat_cost,
            support_price=support,
            pageviews=pv,
            tier_40_cost=tiers[0],
            tier_50_cost=tiers[1],
            tier_80_cost=tiers[2] if random() > 0.2 else None,
        ))

    for _ in range(randint(1, 4)):
        roll = random()
        if roll < P["complaint"] / 4:
            snippet = choice(HARD_SNIPPETS)
        elif roll < P["complaint"]:
            snippet = choice(SOFT_SNIPPETS)
        else:
            snippet = choice(NEUTRAL_SNIPPETS)
        db.add(EmailMessage(
            customer_id=c.id,
            subject=fake.sentence(nb_words=5),
            snippet=snippet,
            sent_at=datetime.combine(today, datetime.min.time()) - timedelta(days=randint(0, 90), hours=randint(0, 23)),
        ))


def seed_if_needed(db: Session, target: int = TARGET_CUSTOMERS) -> int:
    """Top the customer table up to `target` rows; returns how many were added."""
    existing = db.scalar(select(func.count()).select_from(Customer)) or 0
    if existing >= target:
        return 0

    today = date.today()
    added = target - existing
    for _ in range(added):
        _seed_customer(db, today)
    db.commit()
    logger.info("Seeded demo data", extra={"customers": added, "months": HISTORY_MONTHS})
    return added
