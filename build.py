#!/usr/bin/env python3
"""
Build script for Render deployment.
This script creates the database tables, the default admin and the sandbox school.
"""
import os

from educafric import create_app
from educafric.app import create_default_school_and_admin
from educafric.extensions import db
from educafric.sandbox import seed_sandbox


def initialize_database():
    """Initialize database for production deployment."""
    app = create_app(os.environ.get('FLASK_ENV', 'production'))
    with app.app_context():
        print("Creating database tables...")
        db.create_all()

        print("Creating default school and admin user...")
        create_default_school_and_admin(app)

        if os.environ.get('SEED_SANDBOX', '1') == '1':
            print("Seeding sandbox school...")
            seed_sandbox()

        print("Database initialization completed successfully!")


if __name__ == "__main__":
    initialize_database()
