#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and wiring without making a real call.

Checks:
1. Required packages import
2. Environment variables are set (without printing secrets)
3. Configuration values are valid
4. FastAPI app answers /health
"""

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    print(f"  [WARN] {text}")


def check_dependencies() -> bool:
    """Check that required dependencies are importable."""
    print_header("Checking Dependencies")

    dependencies = [
        ("fastapi", "FastAPI"),
        ("uvicorn", "Uvicorn"),
        ("websockets", "WebSockets"),
        ("httpx", "HTTPX"),
        ("msgspec", "msgspec"),
        ("pydantic", "Pydantic"),
        ("structlog", "Structlog"),
        ("dotenv", "python-dotenv"),
    ]

    all_ok = True
    for module, name in dependencies:
        try:
            __import__(module)
            print_ok(name)
        except ImportError as e:
            print_error(f"{name}: {e}")
            all_ok = False

    print("\nOptional dependencies:")
    try:
        __import__("uvloop")
        print_ok("uvloop")
    except ImportError:
        print_warn("uvloop: not installed (default event loop)")

    return all_ok


def check_env_vars() -> bool:
    """
    Check environment variables.

    Missing keys are warnings, not failures: the engine degrades (no Call
    Control actions, no transcription, fallback greeting) instead of refusing
    to start.
    """
    print_header("Checking Environment Variables")

    from dotenv import load_dotenv
    load_dotenv()

    keys = [
        "PUBLIC_HOST",
        "TELNYX_API_KEY",
        "DEEPGRAM_API_KEY",
        "FLOWSYNC_BASE_URL",
        "FLOWSYNC_API_KEY",
    ]
    optional_vars = [
        "PORT",
        "LOG_LEVEL",
        "MEDIA_WS_URL",
        "INTAKE_FLOW_ENABLED",
        "ISSUE_MAX_LISTEN_ANCHORED",
        "SILENCE_REPROMPT_MS",
        "ISSUE_SILENCE_FINALIZE_MS",
        "ISSUE_MAX_LISTEN_MS",
    ]

    for var in keys:
        value = os.getenv(var)
        if not value:
            print_warn(f"{var}: NOT SET")
        elif var in ("PUBLIC_HOST", "FLOWSYNC_BASE_URL"):
            print_ok(f"{var}: {value}")
        else:
            masked = value[:4] + "..." + value[-4:] if len(value) > 8 else "****"
            print_ok(f"{var}: {masked}")

    print("\nOptional variables:")
    for var in optional_vars:
        value = os.getenv(var)
        if value:
            print_ok(f"{var}: {value}")
        else:
            print_warn(f"{var}: not set (using default)")

    return True


def check_config() -> bool:
    """Validate configuration values."""
    print_header("Validating Configuration")

    from src.intake.config import ConfigError, init_config

    try:
        config = init_config()
    except ConfigError as e:
        print_error(str(e))
        return False

    print_ok(f"Media stream URL: {config.ws_url or 'derived from webhook host'}")
    print_ok(f"Intake flow: {'enabled' if config.intake_flow_enabled else 'disabled (FAQ only)'}")
    print_ok(
        f"Issue timers: finalize {config.issue_silence_finalize_ms}ms, "
        f"max listen {config.issue_max_listen_ms}ms "
        f"({'anchored' if config.issue_max_listen_anchored else 'rolling'})"
    )
    return True


def check_health_endpoint() -> bool:
    """Check that the FastAPI /health endpoint works."""
    print_header("Testing Health Endpoint")

    try:
        from fastapi.testclient import TestClient
        from server.app import app

        client = TestClient(app)
        response = client.get("/health")
    except Exception as e:
        print_error(f"Failed to test health endpoint: {e}")
        return False

    if response.status_code != 200:
        print_error(f"Health endpoint returned status {response.status_code}")
        return False
    data = response.json()
    if data.get("status") != "healthy":
        print_error(f"Unexpected response: {data}")
        return False
    print_ok("Health endpoint returned healthy")
    return True


def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" MAINTENANCE INTAKE AGENT - SMOKE TEST")
    print("=" * 50)

    results = [
        ("Dependencies", check_dependencies()),
        ("Environment Variables", check_env_vars()),
        ("Configuration", check_config()),
        ("Health Endpoint", check_health_endpoint()),
    ]

    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'python -m server.app' to start the server")
        print("  2. Expose the port (e.g. 'ngrok http 8080') and set PUBLIC_HOST")
        print("  3. Point the Telnyx Call Control webhook at https://<host>/telnyx/call")
        print("  4. Make a test call!")
        return 0

    print("[ERR] Some checks failed. Please fix the issues above.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
