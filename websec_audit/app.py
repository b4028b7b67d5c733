"""Command-line entrypoint.

Runs one analysis and prints the report as JSON on stdout. Logs go to
stderr (and optionally a file) so the output can be piped.

Exit codes:
    0   report printed
    2   URL rejected by validation
    3   target could not be fetched
    1   unexpected error
    130 interrupted
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from websec_audit.util.env import load_config, get_log_level
from websec_audit.util.log import setup_logging
from websec_audit.util.types import AnalysisOptions, AnalyzerConfig
from websec_audit.scanner.errors import NetworkError, ValidationError
from websec_audit.scanner.runner import SecurityAnalyzer

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog='websec-audit',
        description='Passive security posture check of one web endpoint (JSON output).'
    )
    p.add_argument('url', help='URL or bare host name to analyze')
    p.add_argument('--status', action='store_true', help='only validate the URL and check it is reachable')
    p.add_argument('--no-ssl', action='store_true', help='skip the TLS/certificate analysis')
    p.add_argument('--no-headers', action='store_true', help='skip the security header analysis')
    p.add_argument('--no-cookies', action='store_true', help='skip the cookie analysis')
    p.add_argument('--no-html', action='store_true', help='skip the HTML analysis')
    p.add_argument('--env-file', type=Path, default=None, help='.env file with overrides (default: ./.env)')
    p.add_argument('--log-file', type=Path, default=None, help='also write logs to this file')
    p.add_argument('--indent', type=int, default=2, help='JSON indent (default 2)')
    return p.parse_args(argv)


async def main_async(args, config: AnalyzerConfig) -> dict:
    analyzer = SecurityAnalyzer(config)

    if args.status:
        return await analyzer.check_url_status(args.url)

    options = AnalysisOptions(
        check_ssl=not args.no_ssl,
        check_headers=not args.no_headers,
        check_cookies=not args.no_cookies,
        check_html=not args.no_html,
    )
    report = await analyzer.analyze(args.url, options)
    return report.to_dict()


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    if args.env_file is not None and not args.env_file.exists():
        print(f"Env file not found: {args.env_file}", file=sys.stderr)
        return 1

    # Loads the .env as well, so LOG_LEVEL from the file applies
    config = load_config(args.env_file)
    setup_logging(log_file=args.log_file, level=get_log_level())

    try:
        result = asyncio.run(main_async(args, config))
    except ValidationError as e:
        print(json.dumps({'error': e.to_dict(), 'errors': e.errors}, indent=args.indent))
        return 2
    except NetworkError as e:
        print(json.dumps({'error': e.to_dict()}, indent=args.indent))
        return 3
    except KeyboardInterrupt:
        print(json.dumps({'error': 'analysis cancelled'}))
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1

    print(json.dumps(result, indent=args.indent, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
