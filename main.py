"""Entry point: connect to SharePoint / Microsoft Graph with the configured method and verify it.

Execution flow:
 1. Load configuration (auth method + target URL + optional tenant / environment).
 2. Configure logging at the configured level.
 3. Establish a session with the configured credential flow.
 4. Print what the session is (endpoint, provenance, classification, tenant).
 5. Prove the connection works: read the current web via SharePoint REST, or the organization
    via Microsoft Graph when the session has no SharePoint URL.
 6. Tear the session down (removes cached key material of file based certificates).

Secrets can come from environment variables instead of the config file (see config.py).
"""

import logging
import sys
import time
from typing import Optional

from spconnect.config import AppConfig
from spconnect.connect import Connector
from spconnect.errors import AuthError
from spconnect.graph_client import GraphClient, SharePointClient
from spconnect.tokens import Audience


def main(config_path: Optional[str] = None) -> int:
    cfg = AppConfig.load(config_path)
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    def fmt_dur(seconds: float) -> str:
        m, rem = divmod(seconds, 60.0)
        return f"{int(m):02d}:{rem:06.4f}"

    connector = Connector(cfg)
    t_connect_start = time.perf_counter()
    try:
        session = connector.connect()
    except AuthError as e:
        print(f"Connection failed: {e}")
        return 1
    t_connect_end = time.perf_counter()
    if session is None:
        print("No browser is available for an interactive login; use the device_code method instead.")
        return 1

    print(f"Connected: {session}")
    print(f"Connect Time: {fmt_dur(t_connect_end - t_connect_start)}")

    try:
        t_probe_start = time.perf_counter()
        if session.endpoint and session.tokens.peek(Audience.DIRECTORY_GRAPH) is None:
            web = SharePointClient(session, timeout=cfg.http.timeout,
                                   machine_keys_path=cfg.certificates.machine_keys_path).get_web()
            print(f"Web: {web.get('Title')} ({web.get('Url')})")
        else:
            org = GraphClient(session, timeout=cfg.http.timeout,
                              machine_keys_path=cfg.certificates.machine_keys_path).get_organization()
            print(f"Organization: {org.get('displayName')} ({org.get('id')})")
        print(f"Probe Time: {fmt_dur(time.perf_counter() - t_probe_start)}")
    except (AuthError, RuntimeError) as e:
        print(f"Connection check failed: {e}")
        return 1
    finally:
        connector.close()
    return 0


if __name__ == "__main__":
    path = None
    if len(sys.argv) > 1:
        path = sys.argv[1]
    raise SystemExit(main(path))
