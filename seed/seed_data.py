"""
Seed the database with realistic sample data.

Creates:
  - 3 super agents and 9 field agents across Kenyan counties
  - 3 insurance plans with fixed and percentage splits
  - Allocated premium payments for yesterday and today
  - Edge cases: agent with no super agent, agent with no phone, walk-in
    payments with no agent, a payment whose plan has since been removed

Run:
    python -m seed.seed_data
"""

import asyncio
import random
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from settlement_engine.database import async_session, init_db
from settlement_engine.models.settlement import Agent, InsurancePlan, Payment, SuperAgent


SUPER_AGENTS = [
    {"id": "SA-001", "full_name": "Grace Wanjiku", "phone": "0712000001"},
    {"id": "SA-002", "full_name": "Peter Otieno", "phone": "0712000002"},
    {"id": "SA-003", "full_name": "Fatuma Hassan", "phone": "0712000003"},
]

AGENTS = [
    {"id": "AG-001", "full_name": "John Kamau", "phone": "0722000001", "super_agent_id": "SA-001"},
    {"id": "AG-002", "full_name": "Mary Njeri", "phone": "0722000002", "super_agent_id": "SA-001"},
    {"id": "AG-003", "full_name": "James Mwangi", "phone": "0722000003", "super_agent_id": "SA-001"},
    {"id": "AG-004", "full_name": "Akinyi Achieng", "phone": "0722000004", "super_agent_id": "SA-002"},
    {"id": "AG-005", "full_name": "Brian Ochieng", "phone": "0722000005", "super_agent_id": "SA-002"},
    {"id": "AG-006", "full_name": "Halima Abdi", "phone": "0722000006", "super_agent_id": "SA-003"},
    {"id": "AG-007", "full_name": "Yusuf Omar", "phone": "0722000007", "super_agent_id": "SA-003"},

    # ─── Edge cases ────────────────────────────────────────────────────

    # Independent agent: super-agent commission goes to admin
    {"id": "AG-008", "full_name": "Esther Chebet", "phone": "0722000008", "super_agent_id": None},

    # No phone on file: dispatch fails and the row needs a manual entry
    {"id": "AG-009", "full_name": "Daniel Kiprop", "phone": None, "super_agent_id": "SA-002"},
]

PLANS = [
    {
        "id": "PLAN-BASIC",
        "name": "Afya Basic (daily)",
        "premium": Decimal("50.00"),
        "agent_commission_type": "fixed", "agent_commission_value": Decimal("5.00"),
        "super_agent_commission_type": "fixed", "super_agent_commission_value": Decimal("2.00"),
        "insurance_share_type": "percent", "insurance_share_value": Decimal("80"),
        "admin_share_type": "fixed", "admin_share_value": Decimal("3.00"),
    },
    {
        "id": "PLAN-FAMILY",
        "name": "Afya Family (weekly)",
        "premium": Decimal("350.00"),
        "agent_commission_type": "percent", "agent_commission_value": Decimal("10"),
        "super_agent_commission_type": "percent", "super_agent_commission_value": Decimal("4"),
        "insurance_share_type": "percent", "insurance_share_value": Decimal("78"),
        "admin_share_type": "percent", "admin_share_value": Decimal("8"),
    },
    {
        "id": "PLAN-BODA",
        "name": "Boda Boda Cover (monthly)",
        "premium": Decimal("1200.00"),
        "agent_commission_type": "fixed", "agent_commission_value": Decimal("100.00"),
        "super_agent_commission_type": "fixed", "super_agent_commission_value": Decimal("40.00"),
        "insurance_share_type": "percent", "insurance_share_value": Decimal("85"),
        "admin_share_type": "fixed", "admin_share_value": Decimal("60.00"),
    },
]


def _payments_for(day: date, count: int, rng: random.Random) -> list[Payment]:
    plans = {p["id"]: p["premium"] for p in PLANS}
    agent_ids = [a["id"] for a in AGENTS] + [None]  # None: walk-in payment
    payments = []
    for i in range(count):
        plan_id = rng.choice(list(plans))
        payments.append(Payment(
            id=f"PAY-{day.strftime('%Y%m%d')}-{i + 1:03d}",
            member_id=f"MEM-{rng.randint(1000, 9999)}",
            plan_id=plan_id,
            agent_id=rng.choice(agent_ids),
            amount=plans[plan_id],
            status="allocated",
            allocated_at=datetime.combine(day, time(8, 0)) + timedelta(minutes=rng.randint(0, 600)),
        ))
    return payments


async def seed():
    """Seed the database with sample data."""
    await init_db()

    async with async_session() as session:
        # Check if already seeded
        existing = await session.get(SuperAgent, "SA-001")
        if existing:
            print("Database already seeded. Skipping.")
            return

        for data in SUPER_AGENTS:
            session.add(SuperAgent(**data))
        for data in AGENTS:
            session.add(Agent(**data))
        for data in PLANS:
            session.add(InsurancePlan(**data))
        await session.flush()

        rng = random.Random(42)
        today = date.today()
        payments = _payments_for(today - timedelta(days=1), 40, rng) + _payments_for(today, 25, rng)

        # Plan removed after the premium was collected: settles entirely to insurance
        payments.append(Payment(
            id=f"PAY-{today.strftime('%Y%m%d')}-ORPHAN",
            member_id="MEM-0001",
            plan_id="PLAN-RETIRED",
            agent_id="AG-001",
            amount=Decimal("75.00"),
            status="allocated",
            allocated_at=datetime.combine(today, time(9, 30)),
        ))

        # Not yet allocated: never settled
        payments.append(Payment(
            id=f"PAY-{today.strftime('%Y%m%d')}-PENDING",
            member_id="MEM-0002",
            plan_id="PLAN-BASIC",
            agent_id="AG-002",
            amount=Decimal("50.00"),
            status="pending",
        ))

        session.add_all(payments)
        await session.commit()
        print(
            f"Seeded {len(SUPER_AGENTS)} super agents, {len(AGENTS)} agents, "
            f"{len(PLANS)} plans and {len(payments)} payments."
        )


if __name__ == "__main__":
    asyncio.run(seed())
