import argparse
import os
import sys

import requests

API_BASE = os.getenv("CPSIM_CONTROL_URL", "http://127.0.0.1:7071")

# command -> (method, path)
COMMANDS = {
    "list-db": ("GET", "/list-db"),
    "preparing": ("POST", "/preparing"),
    "ev-stop": ("POST", "/ev-stop"),
    "start": ("POST", "/start"),
    "stop": ("POST", "/stop"),
    "reboot": ("POST", "/reboot"),
    "security-profile": ("POST", "/security-profile"),
    "endpoints": ("GET", "/list"),
}


def _do(method: str, url: str, params: dict) -> requests.Response:
    resp = requests.request(method, url, params=params, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    if resp.text:
        print(resp.text)
    return resp


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a running charge point simulator")
    parser.add_argument("--base", default=API_BASE, help="control server base url")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name in COMMANDS:
        p = sub.add_parser(name)
        if name == "preparing":
            p.add_argument("connectorId", type=int, nargs="?", default=0)
        elif name == "security-profile":
            p.add_argument("profile", type=int)

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    method, path = COMMANDS[args.cmd]
    params = {}
    if args.cmd == "preparing":
        params["connectorId"] = args.connectorId
    elif args.cmd == "security-profile":
        params["profile"] = args.profile
    resp = _do(method, f"{args.base.rstrip('/')}{path}", params)
    sys.exit(0 if resp.ok else 1)


if __name__ == "__main__":
    main()
