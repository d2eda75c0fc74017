import argparse
import os

import uvicorn

# Relay options are handed to the server through the environment, so the
# settings also reach uvicorn reload workers.
_RELAY_OPTIONS = {
    "transport": "AGENTRELAY_TRANSPORT",
    "presence": "AGENTRELAY_PRESENCE",
    "ledger": "AGENTRELAY_LEDGER",
    "name_policy": "AGENTRELAY_NAME_POLICY",
    "snd_path": "AGENTRELAY_SND_PATH",
    "bus_url": "AGENTRELAY_BUS_URL",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the AgentRelay HTTP/SSE server")
    parser.add_argument("--host", default=None, help="Bind host")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument("--transport", choices=["direct", "bus"], help="Delivery transport")
    parser.add_argument("--presence", choices=["sqlite", "memory", "redis"], help="Presence backend")
    ledger = parser.add_mutually_exclusive_group()
    ledger.add_argument("--ledger", dest="ledger", action="store_const", const="1", help="Record history")
    ledger.add_argument("--no-ledger", dest="ledger", action="store_const", const="0", help="Disable history")
    parser.add_argument("--name-policy", choices=["recent", "strict"], help="Short-name collision policy")
    parser.add_argument("--snd-path", help="Path to the snd helper (direct transport)")
    parser.add_argument("--bus-url", help="Redis URL (bus transport, redis presence)")
    return parser


def export_relay_options(args: argparse.Namespace, environ=None) -> None:
    environ = os.environ if environ is None else environ
    for attr, env_name in _RELAY_OPTIONS.items():
        value = getattr(args, attr, None)
        if value is not None:
            environ[env_name] = str(value)


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    export_relay_options(args)

    # Imported after the environment is set; config reads it at import time.
    from agentrelay.config import HOST, PORT

    uvicorn.run(
        "agentrelay.main:app",
        host=args.host or HOST,
        port=args.port or PORT,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
