#!/usr/bin/env python3
"""Initialize database tables and optionally seed a demo business"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from glambooking import create_app
from glambooking.context import build_token
from glambooking.extensions import db
from glambooking.models import Business, Client, Location, Service, Staff

def seed_demo():
    business = Business(name="Demo Salon", slug="demo-salon", plan="FREE")
    db.session.add(business)
    db.session.flush()

    owner = Staff(business_id=business.business_id, name="Demo Owner", email="owner@demo-salon.test", role="OWNER")
    db.session.add_all([
        owner,
        Location(business_id=business.business_id, name="High Street", city="London", is_primary=True),
        Service(business_id=business.business_id, name="Cut & Blow Dry", price_cents=4500, duration_minutes=60),
        Service(business_id=business.business_id, name="Fringe Trim", price_cents=1000, duration_minutes=15),
        Client(business_id=business.business_id, name="Ada Client", email="ada@example.com"),
    ])
    db.session.commit()
    print(f"Seeded business '{business.slug}' (id {business.business_id})")
    print(f"Owner token: {build_token(owner)}")

def init_database(seed=False):
    app = create_app()
    with app.app_context():
        db.create_all()
        print("Database tables initialized successfully")
        if seed and not Business.query.filter_by(slug="demo-salon").first():
            seed_demo()

if __name__ == "__main__":
    init_database(seed="--seed" in sys.argv)
