"""
Onboard a storefront: creates the shop and prints its API key / secret.
The secret is shown once; store it in the storefront plugin settings.

Usage: python scripts/create_shop.py "My Shop" [--slug my-shop]
       python scripts/create_shop.py --deactivate my-shop
"""
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from courier_intel.errors import CourierIntelError
from courier_intel.models.base import SessionLocal, init_db
from courier_intel.services import shop_service


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("name", nargs="?")
    parser.add_argument("--slug", default=None)
    parser.add_argument("--deactivate", metavar="SLUG", default=None)
    parser.add_argument("--activate", metavar="SLUG", default=None)
    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        if args.deactivate or args.activate:
            slug = args.deactivate or args.activate
            shop = shop_service.set_active(db, slug, active=bool(args.activate))
            print(f"Shop {shop.slug}: active={shop.is_active}")
            return 0

        if not args.name:
            parser.error("shop name is required")

        shop = shop_service.create_shop(db, args.name, args.slug)
        print(f"Shop created: {shop.name} (id={shop.id}, slug={shop.slug})")
        print(f"  API key:    {shop.api_key}")
        print(f"  API secret: {shop.api_secret}")
        return 0
    except CourierIntelError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
