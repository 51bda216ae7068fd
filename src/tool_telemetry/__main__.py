"""
tool-telemetry CLI - Command-line interface for the telemetry service.
"""

import argparse
import sys


def main():
    parser = argparse.ArgumentParser(
        description="tool-telemetry - OTLP ingestion and usage analytics for AI tools"
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Serve command
    serve_parser = subparsers.add_parser('serve', help='Run the OTLP receiver and read API')
    serve_parser.add_argument('--host', default='0.0.0.0', help='Host to bind to (default: 0.0.0.0)')
    serve_parser.add_argument('--port', type=int, default=8080, help='Port to bind to (default: 8080)')

    # Schema command
    init_parser = subparsers.add_parser('init-db', help='Create database tables')
    init_parser.add_argument('--database-url', help='SQLAlchemy URL (default: from environment)')

    # Administrative purge
    purge_parser = subparsers.add_parser('purge-profile', help='Delete a tool profile and all of its telemetry')
    purge_parser.add_argument('--customer', required=True, help='Customer id owning the profile')
    purge_parser.add_argument('--profile', required=True, help='Tool profile id')
    purge_parser.add_argument('--database-url', help='SQLAlchemy URL (default: from environment)')

    args = parser.parse_args()

    if args.command == 'serve':
        from tool_telemetry.api.app import run_api
        run_api(host=args.host, port=args.port)
    elif args.command == 'init-db':
        from tool_telemetry.db import init_db, close_db
        init_db(args.database_url)
        close_db()
        print("Database tables created")
    elif args.command == 'purge-profile':
        sys.exit(_purge_profile(args.customer, args.profile, args.database_url))
    else:
        parser.print_help()


def _purge_profile(customer_id: str, profile_id: str, database_url=None) -> int:
    from tool_telemetry.db import TelemetryStore, close_db, get_engine, get_session
    from tool_telemetry.errors import ToolProfileNotFoundError

    get_engine(database_url)
    session = get_session()
    try:
        TelemetryStore(session).delete_tool_profile(customer_id, profile_id)
        session.commit()
        print(f"Deleted tool profile {profile_id}")
        return 0
    except ToolProfileNotFoundError:
        session.rollback()
        print(f"Tool profile {profile_id} not found for customer {customer_id}", file=sys.stderr)
        return 1
    finally:
        close_db()


if __name__ == '__main__':
    main()
