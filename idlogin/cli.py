"""
idlogin command line.

  idlogin serve [--host H] [--port P]
  idlogin verify-token --jwt T --pubkey K [--callback URL]
  idlogin verify-audit <log> [--state FILE]

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .audit import verify_log
from .errors import IdentityError
from .keys import VerifyingKey
from .tokens import LoginTokenService


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("idlogin.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_verify_token(args: argparse.Namespace) -> int:
    try:
        vk = VerifyingKey.from_spki_b64url(args.pubkey)
        payload = LoginTokenService.verify(args.jwt, vk, expected_callback=args.callback)
    except IdentityError as e:
        print("FAIL", file=sys.stderr)
        print(f"{e.code}: {e}", file=sys.stderr)
        return 1

    print("OK")
    print(f"spki_sha256={vk.spki_digest()}")
    print(json.dumps(payload.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _cmd_verify_audit(args: argparse.Namespace) -> int:
    try:
        res = verify_log(args.log, state_path=args.state)
    except OSError as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="idlogin", description="Client-held P-384 identity login.")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP application with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8081)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_cmd_serve)

    vt = sub.add_parser("verify-token", help="Verify a login token as the callback side would.")
    vt.add_argument("--jwt", required=True, help="Compact ES384 token")
    vt.add_argument("--pubkey", required=True, help="base64url SPKI public key (pubKey parameter)")
    vt.add_argument("--callback", default=None, help="Require the token to be issued for this URL")
    vt.set_defaults(func=_cmd_verify_token)

    va = sub.add_parser("verify-audit", help="Verify the hash chain of an audit log.")
    va.add_argument(
        "log",
        type=Path,
        help="Path to audit JSONL file (e.g. audit/identity_audit.jsonl)",
    )
    va.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/identity_audit.state)",
    )
    va.set_defaults(func=_cmd_verify_audit)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
