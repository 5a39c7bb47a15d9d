from __future__ import annotations

"""
Entrypoint for the operator API:
  ADMIN_TOKEN=... python -m risk_intel.admin_server
"""

from risk_intel.web.admin_api import run_server


def main() -> None:
    run_server()


if __name__ == "__main__":
    main()
