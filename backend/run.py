"""
Quick start script for running the interview server.
Handles basic environment checks before starting.
"""

import os
import sys
import signal
import time
import argparse
from pathlib import Path


# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if not shutdown_requested:
        shutdown_requested = True
        print("\n\n" + "=" * 60)
        print("  Shutdown signal received. Stopping server...")
        print("=" * 60)
        sys.exit(0)


def check_env_file():
    """Check if .env file exists and has the realtime provider credentials."""
    env_path = Path(__file__).parent / ".env"

    if not env_path.exists():
        print("ERROR: .env file not found!")
        print("\nPlease create a .env file with your API keys:")
        print("  1. Copy .env.example to .env")
        print("  2. Add your OpenAI (or Azure OpenAI) credentials")
        print("\nExample .env content:")
        print("  OPENAI_API_KEY=your_openai_api_key_here")
        return False

    from dotenv import load_dotenv
    load_dotenv(env_path)

    openai_key = os.getenv("OPENAI_API_KEY")
    azure_ready = all(os.getenv(name) for name in (
        "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_DEPLOYMENT"
    ))

    if (not openai_key or openai_key == "your_openai_api_key_here") and not azure_ready:
        print("ERROR: No realtime provider configured in .env file!")
        print("\nSet OPENAI_API_KEY, or AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_API_KEY / AZURE_OPENAI_DEPLOYMENT")
        return False

    if not os.getenv("GEMINI_API_KEY"):
        print("WARNING: GEMINI_API_KEY not set; analysis reports will be placeholders")

    print("✓ Environment configuration looks good")
    return True


def check_dependencies():
    """Check if required packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "httpx",
        "langchain_core",
        "langchain_google_genai",
        "prometheus_client",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print(f"ERROR: Missing required packages: {', '.join(missing)}")
        print("\nPlease install dependencies:")
        print("  pip install -e .")
        return False

    print("✓ All dependencies are installed")
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Voice Screener - Interview Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The server stores interview sessions, relays SDP offers to the realtime provider
(OpenAI or Azure OpenAI), stores recordings/transcripts and writes analysis reports.
Run interviews against it with: voice-screener interview SESSION_ID
        """
    )
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    args = parser.parse_args()

    print("=" * 60)
    print("  Voice Screener - Interview Server")
    print("=" * 60)
    print()

    if not check_dependencies():
        sys.exit(1)

    if not check_env_file():
        sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    enable_reload = os.getenv("UVICORN_RELOAD", "false").lower() == "true"

    print()
    print("Starting server...")
    print()
    print("API will be available at:")
    print(f"  - http://localhost:{args.port}")
    print(f"  - API docs: http://localhost:{args.port}/docs")
    print(f"  - Metrics: http://localhost:{args.port}/metrics")
    print()
    if enable_reload:
        print("NOTE: Auto-reload is ENABLED (UVICORN_RELOAD=true)")
    print("Press CTRL+C to stop the server")
    print("=" * 60)
    print()

    import uvicorn
    uvicorn.run(
        "voice_screener.main:app",
        host="0.0.0.0",
        port=args.port,
        reload=enable_reload,
        log_level="info",
        timeout_graceful_shutdown=5
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\n" + "=" * 60)
        print("  Server stopped by user (CTRL+C)")
        print("=" * 60)
        time.sleep(0.5)
        sys.exit(0)
    except SystemExit:
        pass
    except Exception as e:
        print("\n\n" + "=" * 60)
        print(f"  ERROR: {str(e)}")
        print("=" * 60)
        sys.exit(1)
