"""Component factory for IssueFlow.

Creates and wires the production collaborators (GitHub, git, Vercel,
wiki checkout, Discord, OpenRouter) around one Orchestrator, so the CLI and the
watcher receive a fully-initialized bundle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from issueflow.agents.invoker import LLMAgentInvoker
from issueflow.core.config import AppConfig, load_config
from issueflow.core.exceptions import KnowledgeBaseError
from issueflow.db.task_store import TaskStore
from issueflow.integrations.discord import DiscordClient
from issueflow.integrations.github import GitHubClient
from issueflow.integrations.vercel import VercelClient
from issueflow.integrations.wiki import WikiClient
from issueflow.llm.client import OpenRouterClient
from issueflow.orchestrator.decomposition import AgentDecomposer
from issueflow.orchestrator.pipeline import PipelineDefinition, default_pipeline
from issueflow.orchestrator.runner import Orchestrator
from issueflow.orchestrator.self_healing import AgentRecoveryStrategy, SelfHealingController
from issueflow.tools.git_ops import GitClient

logger = logging.getLogger("issueflow.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; callers use ``orchestrator`` and
    reach for the individual clients only for watcher polling or cleanup.
    """

    config: AppConfig
    store: TaskStore
    llm_client: OpenRouterClient
    invoker: LLMAgentInvoker
    issue_tracker: GitHubClient
    version_control: GitClient
    pipeline: PipelineDefinition
    orchestrator: Orchestrator
    deployment_platform: Optional[VercelClient] = None
    knowledge_base: Optional[WikiClient] = None
    chat_channel: Optional[DiscordClient] = None


def build_pipeline(config: AppConfig) -> PipelineDefinition:
    """Default pipeline, with consensus settings overridden from config when given."""
    pipeline = default_pipeline()
    settings = config.orchestrator
    if settings.consensus_stage is not None or settings.consensus_sources:
        stage = settings.consensus_stage if settings.consensus_stage is not None else pipeline.consensus_stage
        sources = settings.consensus_sources or list(pipeline.consensus_sources)
        pipeline = pipeline.with_consensus(stage, sources)
    return pipeline


class ComponentFactory:
    """Factory for creating and wiring all IssueFlow components.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        bundle.orchestrator.start_task(42)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        api_key: Optional[str] = None,
        github_token: Optional[str] = None,
        vercel_token: Optional[str] = None,
        discord_token: Optional[str] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test", "production").
            config: Ready AppConfig; skips loading from config_dir when given.
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY env var.
            github_token: Falls back to GITHUB_TOKEN env var.
            vercel_token: Falls back to VERCEL_TOKEN env var.
            discord_token: Falls back to DISCORD_BOT_TOKEN env var.
        """
        logger.info("Initializing components...")

        # --- Config ---
        config = config or load_config(config_dir=config_dir, env=env)

        # --- Storage ---
        store = TaskStore(config.store.tasks_dir)

        # --- LLM ---
        llm_client = OpenRouterClient(config=config.llm, api_key=api_key)
        invoker = LLMAgentInvoker(llm_client, llm_config=config.llm, agents_config=config.agents)
        logger.info("LLM client configured (base_url=%s)", config.llm.base_url)

        # --- Collaborators ---
        issue_tracker = GitHubClient(config.github, token=github_token)
        version_control = GitClient(config.sandbox.base_dir)

        deployment_platform = None
        if config.deployment.enabled:
            deployment_platform = VercelClient(config.deployment, token=vercel_token)
            logger.info("Deployments enabled (project=%s)", config.deployment.project_id)

        knowledge_base = None
        if config.wiki.enabled:
            try:
                knowledge_base = WikiClient(config.wiki.local_path)
            except KnowledgeBaseError as e:
                logger.warning("Wiki disabled: %s", e)

        chat_channel = None
        if config.discord.enabled:
            chat_channel = DiscordClient(config.discord, token=discord_token)
            logger.info("Discord notifications enabled (channel=%s)", config.discord.channel_id)

        # --- Orchestration ---
        pipeline = build_pipeline(config)
        healer = SelfHealingController(
            AgentRecoveryStrategy(invoker),
            max_attempts=config.orchestrator.max_heal_attempts,
        )
        decomposer = None
        if config.orchestrator.enable_auto_decomposition:
            decomposer = AgentDecomposer(invoker, issue_tracker)

        orchestrator = Orchestrator(
            store=store,
            invoker=invoker,
            issue_tracker=issue_tracker,
            version_control=version_control,
            pipeline=pipeline,
            healer=healer,
            deployment_platform=deployment_platform,
            knowledge_base=knowledge_base,
            decomposer=decomposer,
            chat_channel=chat_channel,
            enable_auto_decomposition=config.orchestrator.enable_auto_decomposition,
            intake_halt_decisions=config.orchestrator.intake_halt_decisions,
            base_branch=config.github.base_branch,
            sandbox_base_dir=config.sandbox.base_dir,
            sandbox_max_read_bytes=config.sandbox.max_read_bytes,
            audit_log_path=config.sandbox.audit_log_path,
            deployment_timeout_seconds=config.deployment.timeout_seconds,
            poll_interval_seconds=config.deployment.poll_interval_seconds,
        )

        logger.info("All components initialized (%d stages)", len(pipeline))
        return ComponentBundle(
            config=config,
            store=store,
            llm_client=llm_client,
            invoker=invoker,
            issue_tracker=issue_tracker,
            version_control=version_control,
            pipeline=pipeline,
            orchestrator=orchestrator,
            deployment_platform=deployment_platform,
            knowledge_base=knowledge_base,
            chat_channel=chat_channel,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        if bundle.deployment_platform:
            bundle.deployment_platform.close()
        if bundle.chat_channel:
            bundle.chat_channel.close()
        bundle.issue_tracker.close()
        bundle.llm_client.close()
        logger.info("All components shut down")
