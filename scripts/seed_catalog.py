#!/usr/bin/env python3
"""Seed the database with a sample service menu and products."""
import sys
from pathlib import Path

# Add the parent directory to the path so we can import the app
sys.path.insert(0, str(Path(__file__).parent.parent))

from barbershop import create_app
from barbershop.extensions import db
from barbershop.models import Product, Service

SAMPLE_SERVICES = [
    {"name": "Haircut", "price_cents": 2500, "duration_minutes": 30},
    {"name": "Beard Trim", "price_cents": 1500, "duration_minutes": 15},
    {"name": "Haircut + Beard", "price_cents": 3500, "duration_minutes": 45},
    {"name": "Eyebrow Design", "price_cents": 1000, "duration_minutes": 10},
]

SAMPLE_PRODUCTS = [
    {"name": "Styling Pomade", "price_cents": 1800, "stock_quantity": 40, "category": "Styling"},
    {"name": "Beard Oil", "price_cents": 2200, "stock_quantity": 25, "category": "Beard Care"},
    {"name": "Aftershave Balm", "price_cents": 1500, "stock_quantity": 30, "category": "Shaving"},
]


def seed_catalog():
    app = create_app()

    with app.app_context():
        created = 0
        for data in SAMPLE_SERVICES:
            if Service.query.filter_by(name=data["name"]).first() is None:
                db.session.add(Service(**data))
                created += 1
        for data in SAMPLE_PRODUCTS:
            if Product.query.filter_by(name=data["name"]).first() is None:
                db.session.add(Product(**data))
                created += 1

        db.session.commit()
        print(f"Seeded {created} catalog records")


if __name__ == "__main__":
    seed_catalog()
