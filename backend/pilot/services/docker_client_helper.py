"""
Docker Client Helper with TLS Support

Provides a consistent way to create Docker clients, either from the local
environment or against a remote daemon (optionally over TLS).

Usage:
    from pilot.services.docker_client_helper import get_docker_client
    client = get_docker_client()
"""

import os
import docker
import docker.tls
from typing import Optional
from pilot.core.logging_config import logger
from pilot.core.config import settings


def get_docker_client(timeout: Optional[int] = None) -> Optional[docker.DockerClient]:
    """
    Get a Docker client configured for the sandbox host.

    Supports:
    - Local Docker via environment (DOCKER_HOST unset)
    - TLS-secured connection to a remote daemon (settings.DOCKER_TLS_*)
    - Plain TCP fallback for development

    Returns:
        docker.DockerClient or None if connection fails
    """
    timeout = timeout or settings.DOCKER_CLIENT_TIMEOUT
    docker_host = settings.DOCKER_HOST

    if not docker_host:
        try:
            client = docker.from_env(timeout=timeout)
            client.ping()
            logger.info("[DockerHelper] Connected to local Docker")
            return client
        except Exception as e:
            logger.error(f"[DockerHelper] Local Docker not available: {e}")
            return None

    if settings.DOCKER_TLS_ENABLED:
        client = _try_tls_connection(docker_host, timeout)
        if client:
            return client

    try:
        client = docker.DockerClient(base_url=docker_host, timeout=timeout)
        client.ping()
        logger.info(f"[DockerHelper] Connected to Docker (no TLS): {docker_host}")
        return client
    except Exception as e:
        logger.error(f"[DockerHelper] Docker connection failed: {e}")
        return None


def _try_tls_connection(docker_host: str, timeout: int) -> Optional[docker.DockerClient]:
    """
    Try to connect to Docker with TLS.

    Returns:
        docker.DockerClient or None if TLS connection fails
    """
    ca_cert = settings.DOCKER_TLS_CA_CERT
    client_cert = settings.DOCKER_TLS_CLIENT_CERT
    client_key = settings.DOCKER_TLS_CLIENT_KEY

    if not all([os.path.exists(ca_cert), os.path.exists(client_cert), os.path.exists(client_key)]):
        logger.debug(f"[DockerHelper] TLS certs not found at {ca_cert}, skipping TLS")
        return None

    try:
        tls_config = docker.tls.TLSConfig(
            ca_cert=ca_cert,
            client_cert=(client_cert, client_key),
            verify=True
        )

        # Convert tcp:// to https:// and use TLS port (2376)
        secure_host = docker_host.replace("tcp://", "https://").replace(":2375", ":2376")

        client = docker.DockerClient(base_url=secure_host, tls=tls_config, timeout=timeout)
        client.ping()
        logger.info(f"[DockerHelper] Connected to Docker via TLS: {secure_host}")
        return client

    except Exception as e:
        logger.warning(f"[DockerHelper] TLS connection failed: {e}")
        return None
