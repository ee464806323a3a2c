"""Print an admin bearer token: python -m filecdn.issue_admin_token ops@example.com [--ttl 86400]"""
import argparse

from filecdn.security.jwt import issue_admin_token


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Issue a filecdn admin token")
    parser.add_argument("subject", help="who the token is for")
    parser.add_argument("--ttl", type=int, default=None, help="lifetime in seconds")
    args = parser.parse_args(argv)
    print(issue_admin_token(args.subject, ttl_seconds=args.ttl))


if __name__ == "__main__":
    main()
