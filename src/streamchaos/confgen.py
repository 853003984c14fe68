# src/streamchaos/confgen.py
"""Per-node cluster configuration files for local runs.

Servers are launched with ``-c confs/supercluster_<i>.conf``. This module
writes a minimal layout for N nodes on one host: a named cluster where each
node listens for routes on route_base_port + i and routes to every other
node. Client port and storage directory are passed on the command line, so
they are not written to the files.
"""

from __future__ import annotations

from pathlib import Path

from streamchaos.core.logging import get_logger
from streamchaos.lifecycle import CONF_FILE_TEMPLATE

logger = get_logger(__name__)

DEFAULT_CLUSTER_NAME = "exercise"
DEFAULT_ROUTE_BASE_PORT = 46000


def render_node_config(
    index: int,
    servers: int,
    *,
    cluster_name: str = DEFAULT_CLUSTER_NAME,
    route_base_port: int = DEFAULT_ROUTE_BASE_PORT,
    host: str = "127.0.0.1",
) -> str:
    """Render the configuration of node ``index`` in an N-node cluster."""
    if not 0 <= index < servers:
        raise IndexError(f"node index {index} out of range 0..{servers - 1}")
    routes = [f"nats-route://{host}:{route_base_port + peer}" for peer in range(servers) if peer != index]
    lines = [
        f"server_name: {cluster_name}_n{index}",
        "",
        "jetstream {",
        "  max_memory_store: 256MB",
        "  max_file_store: 2GB",
        "}",
        "",
        "cluster {",
        f"  name: {cluster_name}",
        f"  listen: {host}:{route_base_port + index}",
        "  routes: [",
        *(f"    {route}" for route in routes),
        "  ]",
        "}",
        "",
    ]
    return "\n".join(lines)


def write_cluster_configs(
    conf_dir: Path,
    servers: int,
    *,
    cluster_name: str = DEFAULT_CLUSTER_NAME,
    route_base_port: int = DEFAULT_ROUTE_BASE_PORT,
    overwrite: bool = False,
) -> list[Path]:
    """Write supercluster_<i>.conf for every node.

    Returns:
        Paths of the written files, ordered by node index.

    Raises:
        FileExistsError: If a file exists and ``overwrite`` is False.
    """
    if servers <= 0:
        raise ValueError(f"servers must be positive, got {servers}")
    conf_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for index in range(servers):
        path = conf_dir / CONF_FILE_TEMPLATE.format(index=index)
        if path.exists() and not overwrite:
            raise FileExistsError(f"{path} already exists (use overwrite to replace it)")
        path.write_text(
            render_node_config(index, servers, cluster_name=cluster_name, route_base_port=route_base_port)
        )
        written.append(path)
    logger.info("cluster_configs_written", directory=str(conf_dir), servers=servers)
    return written
