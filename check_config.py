#!/usr/bin/env python3
"""
Diagnostic script to verify Supabase, Stripe and environment configuration.
Run this to check if your environment variables are properly set.

Usage:
    python check_config.py
"""

import os
import sys
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()


def check_env_var(name: str, required: bool = True) -> Tuple[bool, str]:
    """Check if environment variable is set and return status."""
    value = os.getenv(name)
    if value:
        # Mask sensitive values
        if "KEY" in name or "SECRET" in name:
            masked = value[:8] + "..." if len(value) > 8 else "***"
            return True, f"✓ {name}: {masked}"
        return True, f"✓ {name}: {value}"
    else:
        status = "✗" if required else "○"
        return False, f"{status} {name}: NOT SET"


def main() -> None:
    print("=" * 60)
    print("Notary Payments Configuration Check")
    print("=" * 60)
    print()

    issues: List[str] = []

    print("Supabase Configuration:")
    print("-" * 40)
    for var in ["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"]:
        ok, msg = check_env_var(var, required=True)
        print(msg)
        if not ok:
            issues.append(f"Missing required variable: {var}")

    ok, msg = check_env_var("SUPABASE_JWT_SECRET", required=False)
    print(msg)
    if not ok:
        print("  ℹ Only asymmetric (JWKS) access tokens will be accepted")

    url = os.getenv("SUPABASE_URL")
    if url:
        if not url.startswith("https://") and "localhost" not in url and "127.0.0.1" not in url:
            print("  ⚠ SUPABASE_URL should start with 'https://'")
            issues.append("SUPABASE_URL is not an https URL")
        elif url.rstrip("/").endswith(("/rest/v1", "/auth/v1")):
            print("  ⚠ SUPABASE_URL should be the project root, not an API path")
            issues.append("SUPABASE_URL includes an API path")
        else:
            print("  ✓ SUPABASE_URL format looks correct")
    print()

    print("Database Configuration:")
    print("-" * 40)
    ok, msg = check_env_var("DATABASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default SQLite database")
    print()

    print("Stripe Configuration:")
    print("-" * 40)
    ok, msg = check_env_var("STRIPE_SECRET_KEY", required=True)
    print(msg)
    if not ok:
        issues.append("Missing required variable: STRIPE_SECRET_KEY")
    secret = os.getenv("STRIPE_SECRET_KEY") or ""
    if secret and not secret.startswith(("sk_", "rk_")):
        print("  ⚠ STRIPE_SECRET_KEY should start with 'sk_' or 'rk_'")
        issues.append("STRIPE_SECRET_KEY does not look like a Stripe secret key")

    ok, msg = check_env_var("STRIPE_WEBHOOK_SECRET", required=False)
    print(msg)
    if not ok:
        print("  ℹ /api/stripe-webhook will reject events until it is set")
    print()

    print("Application Configuration:")
    print("-" * 40)
    ok, msg = check_env_var("APP_BASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default: http://localhost:3000")
    ok, msg = check_env_var("CORS_ORIGINS", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default: http://localhost:3000,http://127.0.0.1:3000")
    ok, msg = check_env_var("LOG_LEVEL", required=False)
    print(msg)
    print()

    print("=" * 60)
    if issues:
        print("⚠ ISSUES FOUND:")
        for issue in issues:
            print(f"  - {issue}")
        print()
        print("Please fix these issues before deploying.")
        sys.exit(1)
    else:
        print("✓ Configuration looks good!")
        print()
        print("Next steps:")
        print("  1. For local development: uvicorn main:app --reload")
        print("  2. Seed the catalog: python -m database.initialize --seed-catalog catalog.json")
        print("  3. Check health endpoint: /api/health")
        sys.exit(0)


if __name__ == "__main__":
    main()
