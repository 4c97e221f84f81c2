"""
Seed script for the Pantry Receipt Scanner
Creates a demo household with two members
"""
from pantry_scanner.core.database import SessionLocal, engine, Base
from pantry_scanner.core.security import get_password_hash
from pantry_scanner.models.household import Household
from pantry_scanner.models.user import User


def seed_data():
    db = SessionLocal()

    try:
        print("Creating database tables...")
        Base.metadata.create_all(bind=engine)

        # Check if data already exists
        if db.query(User).first():
            print("Data already seeded. Skipping...")
            return

        print("Creating household...")
        household = Household(name="Demo Household")
        db.add(household)
        db.commit()
        db.refresh(household)

        print("Creating users...")
        users = [
            User(
                email="alex@example.com",
                hashed_password=get_password_hash("pantry123"),
                full_name="Alex Demo",
                household_id=household.id
            ),
            User(
                email="sam@example.com",
                hashed_password=get_password_hash("pantry123"),
                full_name="Sam Demo",
                household_id=household.id
            ),
        ]
        for user in users:
            db.add(user)
        db.commit()

        print("\n=== Seed Data Created Successfully ===")
        print(f"\nHousehold: {household.name}")
        print("\nLogin Credentials:")
        for user in users:
            print(f"  {user.email} / pantry123")

    except Exception as e:
        print(f"Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_data()
