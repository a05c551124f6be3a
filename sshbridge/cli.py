"""sshbridge — command-line entry point.

Configures logging, builds a connection config from arguments or a saved
profile, and runs one operation.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import List, Optional

import paramiko

from sshbridge.config import ConnectConfig, ProfileStore, PutDirectoryOptions, RunOptions
from sshbridge.connection import accept_host_key
from sshbridge.errors import SSHBridgeError, UnknownHostError
from sshbridge.session import SSHSession

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="sshbridge", description="Run commands and transfer files over SSH.")
    ap.add_argument("--host", help="Remote host")
    ap.add_argument("--port", type=int, default=22)
    ap.add_argument("-u", "--user", dest="username", help="Remote user")
    ap.add_argument("-i", "--identity", dest="private_key", help="Private key file")
    ap.add_argument("--profile", help="Use a saved connection profile")
    ap.add_argument("--save-profile", metavar="NAME", help="Save the connection settings under NAME")
    ap.add_argument("--ask-password", action="store_true", help="Prompt for the SSH password")
    ap.add_argument("--trust-host", action="store_true", help="Accept an unknown host key and retry")
    ap.add_argument("-v", "--verbose", action="store_true")

    sub = ap.add_subparsers(dest="command", required=True)

    p_exec = sub.add_parser("exec", help="Run a command (options go before the command)")
    p_exec.add_argument("--cwd")
    # Everything after the command name belongs to the remote command
    p_exec.add_argument("argv", nargs=argparse.REMAINDER)

    p_put = sub.add_parser("put", help="Upload one file")
    p_put.add_argument("local")
    p_put.add_argument("remote")

    p_get = sub.add_parser("get", help="Download one file")
    p_get.add_argument("remote")
    p_get.add_argument("local")

    p_dir = sub.add_parser("put-dir", help="Upload a directory tree")
    p_dir.add_argument("local")
    p_dir.add_argument("remote")
    p_dir.add_argument("--no-recursive", action="store_true")
    p_dir.add_argument("--include-hidden", action="store_true")
    p_dir.add_argument("--max-at-once", type=int, default=5)

    p_shell = sub.add_parser("shell", help="Run commands in one interactive shell")
    p_shell.add_argument("commands", nargs="+")
    p_shell.add_argument("--sudo", action="store_true", help="Use a sudo login shell")

    return ap


def _resolve_config(args: argparse.Namespace) -> ConnectConfig:
    if args.profile:
        config = ProfileStore().get_profile(args.profile)
        if config is None:
            raise SystemExit(f"Unknown profile: {args.profile}")
    else:
        config = ConnectConfig(host=args.host, port=args.port, username=args.username)
    if args.private_key:
        config.private_key = args.private_key
    if args.ask_password:
        config.password = getpass.getpass("SSH password: ")
    if args.save_profile:
        ProfileStore().save_profile(args.save_profile, config)
    return config


def _connect(session: SSHSession, trust_host: bool) -> None:
    try:
        session.connect()
    except UnknownHostError as exc:
        if not trust_host or exc.key is None:
            raise
        logger.warning("Trusting new host key for %s (%s)", exc.hostname, exc.fingerprint)
        accept_host_key(exc.hostname, exc.key)
        session.connect()


def _tick(local_path: str, remote_path: str, error: Optional[BaseException]) -> None:
    if error is None:
        print(f"ok    {local_path} -> {remote_path}")
    else:
        print(f"FAIL  {local_path} -> {remote_path}: {error}")


def _run(session: SSHSession, args: argparse.Namespace) -> bool:
    if args.command == "exec":
        result = session.exec(args.argv[0], args.argv[1:], RunOptions(cwd=args.cwd, stream="both"))
        if result.stdout:
            print(result.stdout)
        if result.stderr:
            print(result.stderr, file=sys.stderr)
        return result.code == 0
    if args.command == "put":
        session.put_file(args.local, args.remote)
        return True
    if args.command == "get":
        session.get_file(args.local, args.remote)
        return True
    if args.command == "put-dir":
        options = PutDirectoryOptions(recursive=not args.no_recursive, tick=_tick)
        if args.include_hidden:
            options.validate = lambda _path: True
        return session.put_directory(args.local, args.remote, options, max_at_once=args.max_at_once)
    if args.command == "shell":
        if args.sudo:
            session.enable_sudo_mode(getpass.getpass("sudo password: "))
        commands = [{"cmd": c, "output": True} for c in args.commands]
        print(session.run_commands_in_shell(commands, sudo=args.sudo))
        return True
    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "exec" and not args.argv:
        parser.error("exec: a remote command is required")
    _configure_logging(args.verbose)

    session = SSHSession(_resolve_config(args))
    try:
        _connect(session, args.trust_host)
    except (SSHBridgeError, paramiko.SSHException, OSError) as exc:
        logger.error("Connection failed: %s", exc)
        return 1

    try:
        ok = _run(session, args)
    except (SSHBridgeError, paramiko.SSHException, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        ok = False
    finally:
        session.dispose()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
