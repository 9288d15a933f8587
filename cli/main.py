"""Stress Orchestrator CLI - Command line interface."""

import argparse
import sys
from typing import Optional

import httpx

DEFAULT_URL = "http://localhost:8082"


def get_client(
    base_url: str = DEFAULT_URL,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Get HTTP client for API calls."""
    return httpx.Client(base_url=base_url, timeout=30.0, transport=transport)


def _client(args) -> httpx.Client:
    return get_client(args.url, getattr(args, "transport", None))


def _json(response: httpx.Response) -> dict:
    """Return the response body, exiting with the server's message on errors."""
    if response.is_error:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        print(f"Error ({response.status_code}): {detail}")
        sys.exit(1)
    return response.json()


def parse_member(value: str) -> tuple[str, int]:
    """Parse a ``USE_CASE_ID:USERS`` session member argument."""
    use_case_id, sep, users = value.rpartition(":")
    if not sep or not use_case_id:
        raise argparse.ArgumentTypeError(f"expected USE_CASE_ID:USERS, got '{value}'")
    try:
        return use_case_id, int(users)
    except ValueError:
        raise argparse.ArgumentTypeError(f"user count must be an integer in '{value}'")


def cmd_status(args):
    """Show system status."""
    with _client(args) as client:
        try:
            health = _json(client.get("/api/v1/system/health"))
            print(f"System Status: {health.get('status', 'unknown').upper()}")

            use_cases = _json(client.get("/api/v1/use-cases/"))
            print(f"Use Cases: {use_cases.get('total', 0)} registered")

            sessions = _json(client.get("/api/v1/sessions/running"))
            print(f"Running Sessions: {sessions.get('total', 0)}")

            running = _json(client.get("/api/v1/executions/running"))
            if running.get('executions'):
                print("\nActive Executions:")
                for e in running.get('executions', []):
                    print(f"  - {e.get('use_case_id')} (pid {e.get('pid')}, {e.get('elapsed_seconds')}s)")

        except httpx.ConnectError:
            print(f"Error: Cannot connect to orchestrator at {args.url}")
            sys.exit(1)


def cmd_use_cases(args):
    """List use cases."""
    with _client(args) as client:
        params = {"status": args.status} if args.status else None
        result = _json(client.get("/api/v1/use-cases/", params=params))

        if not result.get('use_cases'):
            print("No use cases registered")
            return

        print(f"{'ID':<32} {'Name':<25} {'Status':<10} {'Users':<7} {'Priority':<8}")
        print("-" * 85)
        for uc in result.get('use_cases', []):
            users = uc.get('user_count')
            priority = uc.get('priority')
            print(
                f"{uc.get('id', ''):<32} {uc.get('name', ''):<25} {uc.get('status', ''):<10} "
                f"{users if users is not None else '-':<7} {priority if priority is not None else '-':<8}"
            )


def cmd_run(args):
    """Start a use case run."""
    with _client(args) as client:
        print(f"Starting use case {args.id} with {args.users} users")
        result = _json(client.post(f"/api/v1/use-cases/{args.id}/run", json={"user_count": args.users}))
        print(result.get('message', 'Test started'))


def cmd_stop(args):
    """Stop a use case run."""
    with _client(args) as client:
        result = _json(client.post(f"/api/v1/use-cases/{args.id}/stop"))
        print(result.get('message', 'Stop signal sent'))
        if not result.get('confirmed', True):
            residual = result.get('termination', {}).get('residual_pids', [])
            print(f"Warning: engine processes still running: {residual}")


def cmd_sessions(args):
    """List test sessions."""
    with _client(args) as client:
        result = _json(client.get("/api/v1/sessions/"))

        if not result.get('sessions'):
            print("No test sessions found")
            return

        print(f"{'ID':<38} {'Name':<25} {'Status':<16} {'OK':<4} {'Fail':<4} {'Users':<6}")
        print("-" * 98)
        for s in result.get('sessions', []):
            print(
                f"{s.get('id', ''):<38} {s.get('name', ''):<25} {s.get('status', ''):<16} "
                f"{s.get('success_count', 0):<4} {s.get('failure_count', 0):<4} {s.get('total_users', 0):<6}"
            )


def cmd_session_create(args):
    """Create a test session."""
    members = dict(args.members)
    data = {
        "name": args.name,
        "description": args.description,
        "use_case_ids": list(members),
        "user_counts": members,
    }
    with _client(args) as client:
        result = _json(client.post("/api/v1/sessions/", json=data))
        print(f"Session created: {result.get('id')}")
        print(f"Use cases: {', '.join(result.get('use_case_ids', []))}")
        print(f"Total users: {result.get('total_users', 0)}")


def cmd_session_start(args):
    """Start a test session."""
    with _client(args) as client:
        result = _json(client.post(f"/api/v1/sessions/{args.id}/start"))
        print(result.get('message', 'Test session started'))


def cmd_session_stop(args):
    """Stop a test session."""
    with _client(args) as client:
        result = _json(client.post(f"/api/v1/sessions/{args.id}/stop"))
        print(result.get('message', 'Test session stopped'))


def cmd_session_status(args):
    """Show a test session and its members."""
    with _client(args) as client:
        s = _json(client.get(f"/api/v1/sessions/{args.id}"))

        print(f"Session: {s.get('name')} ({s.get('id')})")
        print(f"Status: {s.get('status')}")
        print(f"Succeeded: {s.get('success_count', 0)}/{s.get('use_case_count', 0)}")
        print(f"Failed: {s.get('failure_count', 0)}/{s.get('use_case_count', 0)}")

        statuses = s.get('use_case_statuses', {})
        reports = s.get('use_case_report_urls', {})
        print("\nUse Cases:")
        for uc_id in s.get('use_case_ids', []):
            line = f"  - {uc_id}: {statuses.get(uc_id, 'IDLE')}"
            if uc_id in reports:
                line += f" ({reports[uc_id]})"
            print(line)


def cmd_running(args):
    """List live engine processes."""
    with _client(args) as client:
        result = _json(client.get("/api/v1/executions/running"))

        if not result.get('executions'):
            print("No running executions")
            return

        print(f"{'Use Case':<32} {'PID':<8} {'Elapsed':<8} {'Stopping':<8}")
        print("-" * 60)
        for e in result.get('executions', []):
            stopping = "yes" if e.get('stop_requested') else "no"
            print(f"{e.get('use_case_id', ''):<32} {e.get('pid', ''):<8} {e.get('elapsed_seconds', 0):<8} {stopping:<8}")


def cmd_engine(args):
    """Show, check or change the JMeter path."""
    with _client(args) as client:
        if args.check:
            result = _json(client.post("/api/v1/system/validate-jmeter", json={"path": args.check}))
            state = "valid" if result.get('valid') else "invalid"
            print(f"{result.get('path', args.check)}: {state} ({result.get('message', '')})")
            return

        if args.path:
            result = _json(client.post("/api/v1/system/settings", json={"jmeter_path": args.path}))
            print(result.get('message', 'Settings updated'))
        else:
            result = _json(client.get("/api/v1/system/settings"))

        print(f"JMeter path: {result.get('jmeter_path')}")
        for alternative in result.get('jmeter_alternative_paths', []):
            print(f"  fallback: {alternative}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stress Orchestrator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-u", "--url",
        default=DEFAULT_URL,
        help=f"Orchestrator URL (default: {DEFAULT_URL})"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # status
    status_parser = subparsers.add_parser("status", help="Show system status")
    status_parser.set_defaults(func=cmd_status)

    # use-cases
    uc_parser = subparsers.add_parser("use-cases", help="List use cases")
    uc_parser.add_argument("-s", "--status", help="Filter by status")
    uc_parser.set_defaults(func=cmd_use_cases)

    # run
    run_parser = subparsers.add_parser("run", help="Run a use case")
    run_parser.add_argument("id", help="Use case ID")
    run_parser.add_argument("-n", "--users", type=int, required=True, help="Number of users")
    run_parser.set_defaults(func=cmd_run)

    # stop
    stop_parser = subparsers.add_parser("stop", help="Stop a use case run")
    stop_parser.add_argument("id", help="Use case ID")
    stop_parser.set_defaults(func=cmd_stop)

    # sessions
    sessions_parser = subparsers.add_parser("sessions", help="List test sessions")
    sessions_parser.set_defaults(func=cmd_sessions)

    # session-create
    create_parser = subparsers.add_parser("session-create", help="Create a test session")
    create_parser.add_argument("name", help="Session name")
    create_parser.add_argument(
        "members", nargs="+", type=parse_member, metavar="USE_CASE_ID:USERS",
        help="Use case and its user count",
    )
    create_parser.add_argument("-d", "--description", help="Session description")
    create_parser.set_defaults(func=cmd_session_create)

    # session-start
    start_parser = subparsers.add_parser("session-start", help="Start a test session")
    start_parser.add_argument("id", help="Session ID")
    start_parser.set_defaults(func=cmd_session_start)

    # session-stop
    sstop_parser = subparsers.add_parser("session-stop", help="Stop a test session")
    sstop_parser.add_argument("id", help="Session ID")
    sstop_parser.set_defaults(func=cmd_session_stop)

    # session-status
    sstatus_parser = subparsers.add_parser("session-status", help="Show test session status")
    sstatus_parser.add_argument("id", help="Session ID")
    sstatus_parser.set_defaults(func=cmd_session_status)

    # running
    running_parser = subparsers.add_parser("running", help="List running executions")
    running_parser.set_defaults(func=cmd_running)

    # engine
    engine_parser = subparsers.add_parser("engine", help="Show or change the JMeter path")
    engine_parser.add_argument("path", nargs="?", help="New JMeter path")
    engine_parser.add_argument("--check", metavar="PATH", help="Only check whether PATH is usable")
    engine_parser.set_defaults(func=cmd_engine)

    return parser


def main(argv: Optional[list[str]] = None, transport: Optional[httpx.BaseTransport] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.transport = transport
    args.func(args)


if __name__ == "__main__":
    main()
