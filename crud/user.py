"""
UserRepository for database operations on User model
"""

import re
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import User
from errors import ConflictError, ValidationError
from utils.shared_utils import utcnow

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
GHANA_PHONE_PATTERN = re.compile(r'^(\+233|0)[0-9]{9}$')


def normalize_user_fields(values: dict) -> dict:
    """
    Normalize user fields before every persist call.

    Lower-cases and validates email, trims name, strips spaces from phone and
    validates it. Returns a new dict; unknown keys pass through untouched.
    """
    normalized = dict(values)

    if "email" in normalized and normalized["email"] is not None:
        email = normalized["email"].strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Please provide a valid email")
        normalized["email"] = email

    if "name" in normalized and normalized["name"] is not None:
        name = normalized["name"].strip()
        if not name:
            raise ValidationError("Please provide a name")
        if len(name) > 50:
            raise ValidationError("Name cannot be more than 50 characters")
        normalized["name"] = name

    if "phone" in normalized:
        phone = normalized["phone"]
        if phone:
            phone = re.sub(r'[\s-]', '', phone)
            if not GHANA_PHONE_PATTERN.match(phone):
                raise ValidationError("Please provide a valid Ghana phone number")
            normalized["phone"] = phone
        else:
            normalized["phone"] = None

    return normalized


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address (case-insensitive).
        """
        result = await self.db.execute(
            select(User).where(User.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_email_or_phone(self, email: Optional[str], phone: Optional[str]) -> Optional[User]:
        """
        Retrieve the first user matching either identifier.

        Returns None when neither identifier is given.
        """
        clauses = []
        if email:
            clauses.append(User.email == email.strip().lower())
        if phone:
            clauses.append(User.phone == re.sub(r'[\s-]', '', phone))
        if not clauses:
            return None
        result = await self.db.execute(select(User).where(or_(*clauses)).limit(1))
        return result.scalar_one_or_none()

    async def get_user_by_customer_code(self, customer_code: str) -> Optional[User]:
        """Retrieve a user by the payment provider's customer reference."""
        result = await self.db.execute(
            select(User).where(User.provider_customer_code == customer_code)
        )
        return result.scalar_one_or_none()

    async def get_user_by_verification_token(self, token_hash: str) -> Optional[User]:
        """Retrieve a user holding an unexpired email verification token hash."""
        result = await self.db.execute(
            select(User).where(
                User.email_verification_token == token_hash,
                User.email_verification_expire > utcnow(),
            )
        )
        return result.scalar_one_or_none()

    async def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        """Retrieve a user holding an unexpired password reset token hash."""
        result = await self.db.execute(
            select(User).where(
                User.password_reset_token == token_hash,
                User.password_reset_expire > utcnow(),
            )
        )
        return result.scalar_one_or_none()

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - name: str
                - email: str
                - hashed_password: str
                Optional:
                - phone: str
                - role: str (defaults to "user")

        Raises:
            ConflictError: email or phone already registered
        """
        values = normalize_user_fields(user_data)
        user = User(
            name=values["name"],
            email=values["email"],
            phone=values.get("phone"),
            hashed_password=values["hashed_password"],
            role=values.get("role", "user"),
            is_active=values.get("is_active", True),
        )
        self.db.add(user)
        try:
            await self.db.flush()  # Flush to get the ID without committing
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("User already exists")
        await self.db.refresh(user)
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update user fields.

        Args:
            user: User object to update
            updates: Dictionary of fields to update (e.g., {"email_verified": True})
        """
        for key, value in normalize_user_fields(updates).items():
            if hasattr(user, key):
                setattr(user, key, value)

        await self.db.flush()
        return user
