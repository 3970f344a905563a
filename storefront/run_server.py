"""
Local server runner.
Usage: python -m storefront.run_server
"""
import os

from dotenv import load_dotenv


def main():
    import uvicorn

    load_dotenv()
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8001"))

    print("Starting Landed Storefront API...")
    print(f"  STRIPE_SECRET_KEY: {'set' if os.environ.get('STRIPE_SECRET_KEY') else 'NOT SET'}")
    print(f"  ESIM_ACCESS_APP_KEY: {'set' if os.environ.get('ESIM_ACCESS_APP_KEY') else 'NOT SET'}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
