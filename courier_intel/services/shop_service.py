"""Shop onboarding - issues the API key / secret pair a storefront signs with"""
import re
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from courier_intel.errors import NotFoundError, ValidationError
from courier_intel.models.shop import Shop
from courier_intel.utils.logger import log

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


def generate_api_key() -> str:
    return "ci_" + secrets.token_hex(16)


def generate_api_secret() -> str:
    return secrets.token_hex(32)


def create_shop(db: Session, name: str, slug: Optional[str] = None) -> Shop:
    """Create a shop with freshly generated credentials. Credentials are never rotated in place."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Shop name is required", fields=[{"field": "name", "message": "must not be empty"}])

    slug = slugify(slug or name)
    if not slug:
        raise ValidationError("Shop slug is empty", fields=[{"field": "slug", "message": "must contain letters or digits"}])
    if db.query(Shop).filter(Shop.slug == slug).first():
        raise ValidationError(f"Slug '{slug}' is already taken", fields=[{"field": "slug", "message": "already taken"}])

    shop = Shop(
        name=name,
        slug=slug,
        api_key=generate_api_key(),
        api_secret=generate_api_secret(),
        is_active=True,
    )
    db.add(shop)
    db.commit()
    db.refresh(shop)
    log.info(f"Created shop {shop.id} ({slug})")
    return shop


def get_by_api_key(db: Session, api_key: str) -> Optional[Shop]:
    return db.query(Shop).filter(Shop.api_key == api_key).first()


def set_active(db: Session, slug: str, active: bool) -> Shop:
    """Enable or disable webhook access for a shop."""
    shop = db.query(Shop).filter(Shop.slug == slug).first()
    if not shop:
        raise NotFoundError(f"Shop '{slug}' not found")
    shop.is_active = active
    db.commit()
    log.info(f"Shop {shop.id} ({slug}) {'activated' if active else 'deactivated'}")
    return shop
