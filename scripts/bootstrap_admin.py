#!/usr/bin/env python3
"""Provision the root organization and its administrator account.

Usage:
    # Using environment variables (see BOOTSTRAP_* in the settings):
    BOOTSTRAP_ADMIN_PASSWORD='S3cure-Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --org-name "Acme" --org-domain acme.example \
        --admin-email admin@acme.example --admin-username acme-admin \
        --admin-password 'S3cure-Passw0rd'

Running it again with the same input changes nothing. Pass --force-password to
rehash the stored password even when it already matches.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to "true" to write the JSON-backed store under SHARED_FS_ROOT
    BOOTSTRAP_ORG_NAME, BOOTSTRAP_ORG_DESCRIPTION, BOOTSTRAP_ORG_DOMAIN,
    BOOTSTRAP_ADMIN_EMAIL, BOOTSTRAP_ADMIN_USERNAME, BOOTSTRAP_ADMIN_PASSWORD,
    BOOTSTRAP_ADMIN_FIRST_NAME, BOOTSTRAP_ADMIN_LAST_NAME: defaults for the flags
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_parser(settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap the root organization and administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--org-name", default=settings.bootstrap_org_name)
    parser.add_argument("--org-description", default=settings.bootstrap_org_description)
    parser.add_argument("--org-domain", default=settings.bootstrap_org_domain)
    parser.add_argument("--admin-email", default=settings.bootstrap_admin_email)
    parser.add_argument(
        "--admin-username",
        default=settings.bootstrap_admin_username,
        help="Defaults to the email when empty",
    )
    parser.add_argument("--admin-password", default=settings.bootstrap_admin_password)
    parser.add_argument("--admin-first-name", default=settings.bootstrap_admin_first_name)
    parser.add_argument("--admin-last-name", default=settings.bootstrap_admin_last_name)
    parser.add_argument(
        "--force-password",
        action="store_true",
        default=settings.bootstrap_force_password,
        help="Rehash and store the password even if it already matches",
    )
    return parser


def main(argv=None) -> int:
    # Import here so the settings are read after the environment is final
    from tenantauth.config import get_settings
    from tenantauth.service.provisioning import BootstrapInput
    from tenantauth.service.runtime import Runtime

    settings = get_settings()
    args = build_parser(settings).parse_args(argv)

    data = BootstrapInput(
        organization_name=args.org_name,
        organization_description=args.org_description,
        organization_domain=args.org_domain,
        admin_email=args.admin_email,
        admin_username=args.admin_username,
        admin_password=args.admin_password,
        admin_first_name=args.admin_first_name,
        admin_last_name=args.admin_last_name,
        force_password_reset=args.force_password,
    )

    runtime = None
    try:
        # Startup bootstrap is skipped here; the CLI input is applied instead
        runtime = Runtime(settings.model_copy(update={"bootstrap_on_startup": False}))
        result = runtime.provisioning.bootstrap_admin(data)
    except Exception as e:
        print(f"Error: {e}")
        return 1
    finally:
        if runtime is not None:
            runtime.close()

    print(f"Organization: {result.organization.name} (id: {result.organization.id})")
    print(f"Administrator: {result.account.email} (id: {result.account.id})")
    if result.created:
        print("Administrator account created.")
    elif result.password_updated:
        print("Administrator account updated; password was reset.")
    else:
        print("No changes needed - administrator already provisioned.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
