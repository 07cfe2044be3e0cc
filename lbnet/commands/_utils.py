"""Shared utilities for lbnet CLI commands."""

import click

from lbnet.config import LbnetConfig
from lbnet.engine import NetworkEngine
from lbnet.kube_store import KubeObjectStore
from lbnet.store import ObjectStore


def get_config(ctx: click.Context) -> LbnetConfig:
    """Configuration loaded by the root command."""
    config = ctx.obj.get("config")
    if config is None:
        config = LbnetConfig.load(ctx.obj.get("config_path"))
        ctx.obj["config"] = config
    return config


def get_store(ctx: click.Context) -> ObjectStore:
    """Object store for the command, connecting to the cluster on first use.

    A store placed in ``ctx.obj["store"]`` by the caller is used as is.
    """
    store = ctx.obj.get("store")
    if store is None:
        store = KubeObjectStore.from_config(get_config(ctx).kubernetes)
        ctx.obj["store"] = store
    return store


def build_engine(ctx: click.Context) -> NetworkEngine:
    """Engine wired to the command's configuration and store."""
    engine = ctx.obj.get("engine")
    if engine is None:
        engine = NetworkEngine(get_config(ctx), get_store(ctx))
        ctx.obj["engine"] = engine
    return engine
