#!/usr/bin/env python3
"""
Storefront Tracking API Startup Script

Starts the tracking FastAPI server (payment webhooks, first-party
Conversions API relay, UTMify proxy) for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the storefront tracking API server."""
    print("Starting storefront tracking API...")
    print("   POST /webhooks/payments            Stripe webhooks")
    print("   POST /tracking/v1/events           Conversions API relay")
    print("   POST /attribution/client-conversion UTMify proxy")
    print("")
    print("Docs: http://localhost:8000/docs")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Tracking destinations stay unconfigured without:")
        print("   STRIPE_WEBHOOK_SECRET, FACEBOOK_PIXEL_ID, FACEBOOK_ACCESS_TOKEN,")
        print("   UTMFY_WEBHOOK_URL, UTMFY_API_KEY, CONVERSIONS_API_URL")
        print("")

    try:
        uvicorn.run(
            "storefront.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["storefront"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down storefront tracking API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
