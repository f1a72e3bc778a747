"""
Main Application Entry Point for AI Collaboration Hub

Provides command-line interface and main application startup.
"""

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from .communication.message_hub import AGENTS, MESSAGES, MessageHub
from .communication.server import HubServer
from .communication.tools import ToolDispatcher
from .core.autonomous import PROFILES, AutonomousScheduler
from .core.consensus import PROPOSALS, ConsensusCoordinator
from .core.knowledge_graph import KnowledgeGraph
from .core.models import utcnow
from .providers.backends import build_provider
from .providers.router import AIRequestRouter
from .storage import (GraphBackend, MemoryCacheBackend, RedisCacheBackend, SQLiteBackend,
                      StorageAdapter, VectorBackend)
from .utils.config import HubConfig, load_config, setup_logging, write_config

logger = logging.getLogger(__name__)


def build_storage(config: HubConfig) -> StorageAdapter:
    """Compose the primary store and the enabled auxiliary backends."""
    settings = config.storage
    primary = SQLiteBackend(config.get_db_path(settings.primary_db))

    auxiliaries = []
    if settings.enable_memory_cache:
        auxiliaries.append(MemoryCacheBackend(default_ttl=settings.cache_default_ttl))
    if settings.redis_url:
        auxiliaries.append(RedisCacheBackend(settings.redis_url,
                                             default_ttl=settings.cache_default_ttl))
    if settings.enable_graph:
        auxiliaries.append(GraphBackend())
    if settings.enable_vector:
        auxiliaries.append(VectorBackend(dimensions=settings.vector_dimensions))

    return StorageAdapter(
        primary,
        auxiliaries,
        health_check_interval=settings.health_check_interval,
        cache_ttl=settings.cache_default_ttl,
    )


class CollabHubWorkspace:
    """
    Main application class for AI Collaboration Hub.

    Builds every component from one configuration object, manages their
    lifecycle and answers the health query.
    """

    def __init__(self, config: HubConfig, storage: Optional[StorageAdapter] = None):
        """Initialize the workspace with configuration."""
        self.config = config
        self.storage = storage or build_storage(config)

        self.knowledge_graph = KnowledgeGraph(
            self.storage,
            search_cache_ttl=config.knowledge_graph.search_cache_ttl,
            default_search_limit=config.knowledge_graph.default_search_limit,
        )

        self.message_hub = MessageHub(
            self.storage,
            retention_days=config.message_hub.retention_days,
            max_messages=config.message_hub.max_messages,
            eviction_interval=config.message_hub.eviction_interval,
            stats_window=config.message_hub.stats_window,
        )

        router_config = config.router
        self.router = AIRequestRouter(
            [build_provider(p) for p in router_config.providers],
            failure_threshold=router_config.failure_threshold,
            failure_window=router_config.failure_window,
            cooldown=router_config.cooldown,
            call_timeout=router_config.call_timeout,
            max_workers=router_config.max_workers,
        )

        self.consensus = ConsensusCoordinator(
            self.storage,
            self.message_hub,
            self.knowledge_graph,
            default_timeout=config.consensus.default_timeout,
            sweep_interval=config.consensus.sweep_interval,
            default_mode=config.consensus.default_mode,
        )

        self.scheduler = AutonomousScheduler(
            self.storage,
            self.message_hub,
            self.knowledge_graph,
            router=self.router,
            default_tokens_per_day=config.autonomous.default_tokens_per_day,
            action_costs=config.autonomous.action_costs,
            default_action_cost=config.autonomous.default_action_cost,
            reset_check_interval=config.autonomous.reset_check_interval,
        )

        self.dispatcher = ToolDispatcher(
            self.knowledge_graph,
            self.message_hub,
            self.consensus,
            self.scheduler,
            self.router,
            health=self.get_health,
        )

        self._running = False
        self._started_at: Optional[float] = None

    def start(self):
        """Start background work of all components."""
        if self._running:
            logger.warning("Workspace already running")
            return
        logger.info("Starting AI Collaboration Hub")
        self.storage.start()
        self.consensus.start()
        self.scheduler.start()
        self.scheduler.reset_expired_budgets()
        self.consensus.expire_overdue()
        self._running = True
        self._started_at = time.time()
        logger.info("AI Collaboration Hub started successfully")

    def stop(self):
        """Stop all components gracefully."""
        logger.info("Stopping AI Collaboration Hub")
        self._running = False
        self.scheduler.stop()
        self.consensus.stop()
        self.router.close()
        self.storage.stop()
        logger.info("AI Collaboration Hub stopped")

    def get_health(self) -> Dict[str, Any]:
        """Per-backend health, provider circuits, counts and process stats."""
        storage = self.storage.health()
        providers = self.router.provider_status()

        status = "healthy"
        if storage["degraded"] or not all(p["healthy"] for p in providers):
            status = "degraded"
        if not storage["primary"]["healthy"]:
            status = "critical"

        counts = dict(self.knowledge_graph.get_stats())
        counts.update({
            "messages": self.storage.count(MESSAGES),
            "agents": self.storage.count(AGENTS),
            "proposals": self.storage.count(PROPOSALS),
            "openProposals": len(self.storage.query(PROPOSALS, {"status": "open"})),
            "autonomousProfiles": self.storage.count(PROFILES),
        })

        return {
            "status": status,
            "timestamp": utcnow().isoformat(),
            "environment": self.config.environment,
            "running": self._running,
            "storage": storage,
            "providers": providers,
            "counts": counts,
            "process": self._process_stats(),
        }

    def _process_stats(self) -> Dict[str, Any]:
        process = psutil.Process(os.getpid())
        with process.oneshot():
            memory = process.memory_info()
            return {
                "pid": process.pid,
                "memoryRss": memory.rss,
                "cpuPercent": process.cpu_percent(interval=None),
                "threads": process.num_threads(),
                "uptimeSeconds": round(time.time() - (self._started_at or process.create_time()), 1),
            }

    def _display_startup_info(self):
        """Display startup information to console."""
        health = self.get_health()
        print("\n" + "=" * 60)
        print("🤖 AI COLLABORATION HUB STARTED")
        print("=" * 60)
        print(f"Environment: {self.config.environment}")
        print(f"Data Directory: {self.config.data_dir}")
        print(f"Tools: http://{self.config.server.host}:{self.config.server.port}/tools")
        print(f"WebSocket: ws://{self.config.server.host}:{self.config.server.port}/ws/<agent_id>")
        print(f"Log Level: {self.config.monitoring.log_level}")
        print("\nBackends:")
        print(f"  ✓ {health['storage']['primary']['name']} (primary)")
        for aux in health["storage"]["auxiliaries"]:
            mark = "✓" if aux["healthy"] else "✗"
            print(f"  {mark} {aux['name']}")
        print("\nProviders:")
        for provider in health["providers"]:
            print(f"  {provider['name']} ({provider['kind']}): {provider['state']}")
        print(f"\n📊 Status: {health['status'].upper()}")
        print(f"  Entities: {health['counts']['entities']}")
        print(f"  Messages: {health['counts']['messages']}")
        print("\n🚀 Ready for agent connections!")
        print("=" * 60 + "\n")


def create_sample_config(path: str = "ai_collab_hub_config.yaml") -> Path:
    """Write the default configuration as a starting point."""
    config_path = write_config(HubConfig(), path)
    print(f"Sample configuration created: {config_path}")
    return config_path


def run_workspace(config_path: Optional[str] = None, env_file: Optional[str] = None):
    """Run the AI Collaboration Hub until interrupted."""
    config = load_config(config_path, env_file)
    setup_logging(config)

    workspace = CollabHubWorkspace(config)
    workspace.start()
    try:
        workspace._display_startup_info()
        HubServer(workspace).run()
    finally:
        workspace.stop()


def print_status(config_path: Optional[str] = None, env_file: Optional[str] = None):
    """Print the health of a workspace built from the configuration."""
    config = load_config(config_path, env_file)
    workspace = CollabHubWorkspace(config)
    try:
        workspace.storage.probe_backends()
        print(json.dumps(workspace.get_health(), indent=2, default=str))
    finally:
        workspace.stop()


def main():
    """Main entry point with command-line interface."""
    parser = argparse.ArgumentParser(
        description="AI Collaboration Hub - shared memory and messaging for AI agents"
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    start_parser = subparsers.add_parser('start', help='Start the AI Collaboration Hub')
    start_parser.add_argument('--config', '-c', help='Configuration file path')
    start_parser.add_argument('--env', '-e', help='Environment file path')

    config_parser = subparsers.add_parser('config', help='Configuration management')
    config_parser.add_argument('--create-sample', action='store_true',
                               help='Create sample configuration file')
    config_parser.add_argument('--output', '-o', default='ai_collab_hub_config.yaml',
                               help='Path of the sample configuration')

    status_parser = subparsers.add_parser('status', help='Show backend health and counts')
    status_parser.add_argument('--config', '-c', help='Configuration file path')
    status_parser.add_argument('--env', '-e', help='Environment file path')

    args = parser.parse_args()

    if args.command == 'start':
        try:
            run_workspace(args.config, args.env)
        except KeyboardInterrupt:
            print("\nShutdown complete.")
        except Exception as e:
            print(f"Failed to start workspace: {e}")
            sys.exit(1)

    elif args.command == 'config':
        if args.create_sample:
            create_sample_config(args.output)
        else:
            config_parser.print_help()

    elif args.command == 'status':
        try:
            print_status(args.config, args.env)
        except Exception as e:
            print(f"Failed to read status: {e}")
            sys.exit(1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
