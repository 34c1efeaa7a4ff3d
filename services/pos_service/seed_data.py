import logging

from sqlalchemy.orm import Session

from services.pos_service.models import Branch, Client, Product, Service, Staff

logger = logging.getLogger(__name__)

SAMPLE_BRANCHES = [
    ("Downtown Spa", "0712345001"),
    ("Westlands Branch", "0712345002"),
    ("Karen Wellness Center", "0712345003"),
]

# (name, description, category, duration_minutes, price)
SAMPLE_SERVICES = [
    ("Swedish Massage", "Relaxing full body massage using Swedish techniques", "massage", 60, 3500),
    ("Deep Tissue Massage", "Intensive massage targeting deep muscle layers", "massage", 90, 4500),
    ("Facial Treatment", "Rejuvenating facial with cleansing and moisturizing", "facial", 45, 2500),
    ("Body Scrub", "Exfoliating body treatment with natural ingredients", "body", 30, 2000),
    ("Manicure", "Complete nail care and styling", "manicure", 45, 1500),
    ("Pedicure", "Complete foot and nail care treatment", "pedicure", 60, 2000),
]

# (sku, name, description, category, selling_price, stock)
SAMPLE_PRODUCTS = [
    ("OIL-LAV-100", "Lavender Massage Oil", "100ml aromatherapy massage oil", "body", 1200, 25),
    ("CRM-HYD-50", "Hydrating Face Cream", "50ml daily moisturizer", "facial", 1800, 15),
    ("SCR-COF-200", "Coffee Body Scrub", "200g exfoliating scrub", "body", 950, 30),
    ("POL-RED-15", "Nail Polish - Classic Red", "15ml long-wear polish", "manicure", 500, 40),
]

# (name, email, phone)
SAMPLE_STAFF = [
    ("Sarah Johnson", "sarah.johnson@wellness.com", "0712345010"),
    ("Michael Davis", "michael.davis@wellness.com", "0712345011"),
    ("Emma Wilson", "emma.wilson@wellness.com", "0712345012"),
    ("James Brown", "james.brown@wellness.com", "0712345013"),
]

# (first_name, last_name, email, phone)
SAMPLE_CLIENTS = [
    ("Alice", "Smith", "alice.smith@example.com", "0712000001"),
    ("Bob", "Johnson", "bob.johnson@example.com", "0712000002"),
]


def seed_catalog(db: Session) -> None:
    """Seed branches, services, products, staff and clients. Safe to run on every start."""
    if db.query(Branch).first() is not None:
        logger.info("Catalog already seeded, skipping")
        return

    logger.info("Seeding catalog...")
    branches = [Branch(name=name, phone=phone) for name, phone in SAMPLE_BRANCHES]
    db.add_all(branches)

    for name, description, category, duration, price in SAMPLE_SERVICES:
        db.add(
            Service(
                name=name,
                description=description,
                category=category,
                duration_minutes=duration,
                price=price,
                branches=list(branches),
            )
        )

    db.flush()
    for branch in branches:
        for sku, name, description, category, price, stock in SAMPLE_PRODUCTS:
            db.add(
                Product(
                    branch_id=branch.id,
                    sku=sku,
                    name=name,
                    description=description,
                    category=category,
                    selling_price=price,
                    current_stock=stock,
                )
            )

    for name, email, phone in SAMPLE_STAFF:
        db.add(Staff(name=name, email=email, phone=phone, branches=list(branches)))

    for first_name, last_name, email, phone in SAMPLE_CLIENTS:
        db.add(Client(first_name=first_name, last_name=last_name, email=email, phone=phone))

    db.commit()
    logger.info(
        f"Seeded {len(SAMPLE_BRANCHES)} branches, {len(SAMPLE_SERVICES)} services, "
        f"{len(SAMPLE_STAFF)} staff and {len(SAMPLE_CLIENTS)} clients"
    )
