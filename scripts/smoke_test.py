#!/usr/bin/env python3
"""
Smoke Test Script

Plays the gateway side of a ConversationRelay call against a running server.

Checks:
1. Environment variables are set (without printing secrets)
2. /health returns OK
3. A setup frame is answered with the assistant greeting
4. A prompt frame is answered with streamed tokens ending in last=true
"""

import argparse
import asyncio
import json
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
    """Print success message."""
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    """Print error message."""
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    """Print warning message."""
    print(f"  [WARN] {text}")


def check_env_vars() -> bool:
    """Check that required environment variables are set."""
    print_header("Checking Environment Variables")

    from dotenv import load_dotenv
    load_dotenv()

    provider = os.getenv("LLM_PROVIDER", "openai").strip().lower()
    key_var = "GROQ_API_KEY" if provider == "groq" else "OPENAI_API_KEY"
    required_vars = ["PUBLIC_HOST", key_var]

    optional_vars = [
        "PORT",
        "LOG_LEVEL",
        "SILENCE_SECONDS_THRESHOLD",
        "SILENCE_RETRY_THRESHOLD",
        "ASSISTANTS_FILE",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_VERIFY_SERVICE_SID",
        "LIVE_AGENT_NUMBER",
    ]

    all_ok = True

    for var in required_vars:
        value = os.getenv(var)
        if value:
            if var == "PUBLIC_HOST":
                print_ok(f"{var}: {value}")
            else:
                # Mask sensitive values
                masked = value[:4] + "..." + value[-4:] if len(value) > 8 else "****"
                print_ok(f"{var}: {masked}")
        else:
            print_error(f"{var}: NOT SET")
            all_ok = False

    print("\nOptional variables:")
    for var in optional_vars:
        value = os.getenv(var)
        if value:
            print_ok(f"{var}: set")
        else:
            print_warn(f"{var}: not set (using default)")

    return all_ok


async def check_health_endpoint(base_url: str) -> bool:
    """Check that the /health endpoint works."""
    print_header("Testing Health Endpoint")

    import httpx

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/health", timeout=5.0)
    except httpx.RequestError as e:
        print_error(f"Failed to reach server: {e}")
        return False

    if response.status_code == 200 and response.json().get("status") == "healthy":
        print_ok("Health endpoint returned healthy")
        return True

    print_error(f"Health endpoint returned status {response.status_code}")
    return False


async def check_conversation(ws_url: str, assistant: str, prompt: str) -> bool:
    """Send setup + prompt frames and read the replies."""
    print_header("Testing Conversation Relay")

    import websockets

    setup = {
        "type": "setup",
        "sessionId": "VXsmoketest",
        "callSid": "CAsmoketest",
        "from": "+15005550006",
        "to": "+15005550001",
        "customParameters": {"assistant": assistant},
    }

    try:
        async with websockets.connect(ws_url) as ws:
            await ws.send(json.dumps(setup))
            greeting = json.loads(await asyncio.wait_for(ws.recv(), timeout=10.0))
            if greeting.get("type") != "text" or not greeting.get("last"):
                print_error(f"Unexpected greeting frame: {greeting}")
                return False
            print_ok(f"Greeting: {greeting.get('token')}")

            await ws.send(json.dumps({"type": "prompt", "voicePrompt": prompt, "last": True}))
            tokens = []
            while True:
                frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=30.0))
                if frame.get("type") != "text":
                    continue
                tokens.append(frame.get("token", ""))
                if frame.get("last"):
                    break
            print_ok(f"Reply: {''.join(tokens)}")
            return True

    except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
        print_error(f"Conversation failed: {e}")
        return False


async def main() -> int:
    """Run all smoke tests."""
    parser = argparse.ArgumentParser(description="Conversation Relay smoke test")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))
    parser.add_argument("--assistant", default="default")
    parser.add_argument("--prompt", default="What's my balance?")
    args = parser.parse_args()

    print("\n" + "=" * 50)
    print(" CONVERSATION RELAY - SMOKE TEST")
    print("=" * 50)

    base_url = f"http://{args.host}:{args.port}"
    ws_url = f"ws://{args.host}:{args.port}/conversation-relay"

    results = []
    results.append(("Environment Variables", check_env_vars()))
    results.append(("Health Endpoint", await check_health_endpoint(base_url)))
    results.append(("Conversation", await check_conversation(ws_url, args.assistant, args.prompt)))

    # Summary
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
        return 0
    else:
        print("[ERR] Some checks failed. Please fix the issues above.")
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
