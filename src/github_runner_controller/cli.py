"""
Command-line interface for GitHub Runner Controller.

Runs the controller, validates configuration files, generates a sample
configuration and prints the persisted fleet state.
"""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.runner_controller import GitHubRunnerController
from .models.configuration import ControllerConfiguration
from .models.runner import ContainerSpec, Credential, RunnerKind, utcnow
from .storage.state_store import SqlStateStore
from .utils.kubernetes_client import KubernetesContainerDriver
from .utils.security import CredentialCipher, SecurityValidator

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="github-runner-controller",
    help="GitHub Actions Runner Controller for Kubernetes",
    no_args_is_help=True
)

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def load_configuration(config_path: str) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    Args:
        config_path: Path to a YAML or JSON configuration file

    Returns:
        Validated configuration object

    Raises:
        typer.Exit: If configuration is missing or invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        typer.echo(f"Error: Configuration file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(config_file, 'r') as f:
            if config_path.endswith('.json'):
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f)

        config = ControllerConfiguration(**(config_data or {}))

    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            location = ".".join(str(part) for part in error['loc'])
            typer.echo(f"  {location}: {error['msg']}", err=True)
        raise typer.Exit(1)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Configuration loaded successfully from {config_path}")
    return config


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO), format="%(message)s")

    if log_format == "console":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer()
            ]
        )


def profile_security_issues(controller_config: ControllerConfiguration) -> list:
    """Render a sample pod for every profile and run the pod security checks on it."""
    validator = SecurityValidator()
    driver = KubernetesContainerDriver(
        namespace=controller_config.kubernetes.namespace,
        profiles=controller_config.profiles,
        service_account=controller_config.kubernetes.service_account,
    )
    now = utcnow()
    issues = []
    for profile_name, profile in controller_config.profiles.items():
        spec = ContainerSpec(
            name="gh-validate-dedicated-0",
            instance_id="validate",
            repository="example/validate",
            kind=RunnerKind.DEDICATED,
            image=profile.image,
            labels=profile.labels,
            profile=profile_name,
            credential=Credential(
                value="validate",
                issued_at=now,
                expires_at=now,
                repository="example/validate",
                runner_name="gh-validate-dedicated-0",
            ),
        )
        manifest = driver.build_pod_manifest(spec.name, f"{spec.name}-token", spec, profile)
        issues.extend(f"{profile_name}: {issue}" for issue in validator.validate_pod_spec(manifest))
    return issues


@app.command()
def run(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file",
        envvar="RUNNER_CONTROLLER_CONFIG"
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level", "-l",
        help="Logging level",
        envvar="LOG_LEVEL"
    ),
    log_format: str = typer.Option(
        "json",
        "--log-format",
        help="Log format (json or console)",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    ),
    terminate_on_exit: bool = typer.Option(
        False,
        "--terminate-on-exit",
        help="Terminate every runner when the controller stops"
    )
) -> None:
    """
    Start the GitHub Runner Controller.

    Loads configuration, restores persisted runner state and runs the
    scaling, health and job routing loops until interrupted.
    """
    setup_logging(log_level, log_format)

    typer.echo("🚀 Starting GitHub Runner Controller")
    typer.echo(f"📄 Loading configuration from: {config}")
    controller_config = load_configuration(config)

    if not controller_config.pools:
        typer.echo("⚠️  No repository pools configured, the controller will idle", err=True)

    if dry_run:
        typer.echo("✅ Configuration validation successful (dry run)")
        typer.echo(f"📦 Pools configured: {len(controller_config.pools)}")
        typer.echo(f"📊 Profiles configured: {len(controller_config.profiles)}")
        typer.echo(f"🔧 Default profile: {controller_config.default_profile}")
        typer.echo(f"💾 State database: {controller_config.storage.database_url}")
        return

    try:
        controller = GitHubRunnerController(controller_config)
        asyncio.run(_run_controller(controller, terminate_on_exit))
    except KeyboardInterrupt:
        typer.echo("\n🛑 Shutdown requested by user")
    except Exception as e:
        typer.echo(f"❌ Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    )
) -> None:
    """
    Validate configuration file without starting the controller.

    Besides schema validation, renders a runner pod for each profile and
    checks it against the pod security rules.
    """
    typer.echo("🔍 Validating configuration...")
    controller_config = load_configuration(config)

    security_issues = profile_security_issues(controller_config)
    if security_issues:
        typer.echo("⚠️  Security issues found:", err=True)
        for issue in security_issues:
            typer.echo(f"  - {issue}", err=True)

    typer.echo("✅ Configuration validation successful")
    typer.echo(f"📦 Pools: {len(controller_config.pools)}")
    for pool in controller_config.pools:
        typer.echo(
            f"   {pool.repository}: {pool.dedicated_runners} dedicated, "
            f"up to {pool.dynamic_ceiling} dynamic, profile {pool.profile or controller_config.default_profile}"
        )
    typer.echo(f"📊 Profiles: {len(controller_config.profiles)}")
    typer.echo(f"🔧 Default profile: {controller_config.default_profile}")
    typer.echo(f"🔒 Metrics enabled: {controller_config.enable_metrics}")
    if controller_config.credentials.encryption_key is None:
        typer.echo("⚠️  No credential encryption key set, stored credentials will not survive restarts")

    if security_issues:
        typer.echo(f"⚠️  Security warnings: {len(security_issues)}")
    else:
        typer.echo("🛡️  No security issues found")


def sample_configuration() -> Dict[str, Any]:
    return {
        "github": {
            "api_url": "https://api.github.com",
            "token": "REPLACE_WITH_ACTUAL_TOKEN",
            "request_timeout": 10.0,
            "tls_verify": True,
            "max_requests_per_minute": 60
        },
        "kubernetes": {
            "namespace": "github-runners",
            "service_account": "github-runner",
            "call_timeout": 20.0
        },
        "storage": {
            "database_url": "sqlite:///runner-controller.db"
        },
        "default_profile": "default",
        "profiles": {
            "default": {
                "name": "default",
                "image": "ghcr.io/actions/actions-runner:2.319.1",
                "labels": ["self-hosted", "linux", "x64"],
                "resources": {
                    "cpu_request": "500m",
                    "cpu_limit": "2000m",
                    "memory_request": "1Gi",
                    "memory_limit": "2Gi"
                },
                "security_context": {
                    "run_as_non_root": True,
                    "run_as_user": 1001,
                    "run_as_group": 1001,
                    "allow_privilege_escalation": False,
                    "capabilities_drop": ["ALL"],
                    "seccomp_profile_type": "RuntimeDefault"
                }
            },
            "large": {
                "name": "large",
                "image": "ghcr.io/actions/actions-runner:2.319.1",
                "labels": ["self-hosted", "linux", "x64", "large"],
                "resources": {
                    "cpu_request": "2000m",
                    "cpu_limit": "8000m",
                    "memory_request": "4Gi",
                    "memory_limit": "16Gi"
                }
            }
        },
        "pools": [
            {
                "repository": "example-org/service",
                "dedicated_runners": 1,
                "dynamic_ceiling": 3,
                "scale_up_threshold": 1.0,
                "idle_timeout": 300,
                "cooldown": 60,
                "labels": [],
                "blocked_job_types": []
            },
            {
                "repository": "example-org/heavy-builds",
                "dedicated_runners": 0,
                "dynamic_ceiling": 5,
                "profile": "large",
                "labels": ["large"],
                "blocked_job_types": ["pull_request_target"]
            }
        ],
        "scaling": {
            "evaluation_interval": 30,
            "reap_policy": "oldest_last_busy",
            "immediate_scale_up": True
        },
        "credentials": {
            "refresh_fraction": 0.75,
            "max_refresh_attempts": 3,
            "backoff_base": 5.0,
            "backoff_max": 60.0,
            "expiry_margin": 60.0
        },
        "health": {
            "heartbeat_interval": 30,
            "miss_threshold": 2,
            "provisioning_timeout": 600,
            "max_recovery_attempts": 1,
            "assignment_grace": 60
        },
        "routing": {
            "queue_poll_interval": 15,
            "job_queue_timeout": 86400
        },
        "monitoring_port": 8080,
        "log_level": "INFO",
        "enable_metrics": True
    }


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """
    Generate a sample configuration file with secure defaults.
    """
    sample_config = sample_configuration()
    try:
        with open(Path(output), 'w') as f:
            if format.lower() == 'json':
                json.dump(sample_config, f, indent=2)
            else:
                yaml.safe_dump(sample_config, f, default_flow_style=False, indent=2, sort_keys=False)
    except OSError as e:
        typer.echo(f"❌ Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Sample configuration generated: {output}")
    typer.echo("🔧 Please update the GitHub token and repositories before use")
    typer.echo("🔑 Set credentials.encryption_key to a Fernet key so stored credentials survive restarts")


def collect_status(store: SqlStateStore, events: int = 10) -> Dict[str, Any]:
    """Summarise persisted pools, runners and recent scaling events."""
    report: Dict[str, Any] = {}
    for pool in store.load_pools():
        instances = store.load_instances(pool.repository)
        report[pool.repository] = {
            "dedicated": pool.dedicated_count,
            "dynamic": pool.dynamic_count,
            "dynamic_ceiling": pool.dynamic_ceiling,
            "runners": [
                {
                    "id": instance.id,
                    "name": instance.runner_name,
                    "kind": instance.kind.value,
                    "state": instance.state.value,
                    "quarantined": instance.quarantined,
                    "quarantine_reason": instance.quarantine_reason,
                    "current_job_id": instance.current_job_id,
                }
                for instance in instances
            ],
            "recent_events": [
                {
                    "timestamp": event.timestamp.isoformat(),
                    "action": event.action.value,
                    "reason": event.reason.value,
                    "outcome": event.outcome.value,
                    "instance_id": event.instance_id,
                }
                for event in store.load_scaling_events(pool.repository, limit=events)
            ],
        }
    return report


@app.command()
def status(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    ),
    format: str = typer.Option(
        "table",
        "--format", "-f",
        help="Output format (table, json, yaml)"
    ),
    events: int = typer.Option(
        10,
        "--events", "-e",
        help="Number of recent scaling events per pool"
    )
) -> None:
    """
    Display the persisted runner fleet: pools, runners and recent scaling events.
    """
    controller_config = load_configuration(config)
    key = controller_config.credentials.encryption_key
    store = SqlStateStore.from_url(
        controller_config.storage.database_url,
        CredentialCipher(key.get_secret_value() if key else None),
    )
    try:
        report = collect_status(store, events)
    finally:
        store.close()

    if format.lower() == "json":
        typer.echo(json.dumps(report, indent=2))
        return
    if format.lower() == "yaml":
        typer.echo(yaml.safe_dump(report, default_flow_style=False, sort_keys=False))
        return

    if not report:
        typer.echo("No pools recorded yet")
        return
    for repository, pool in report.items():
        typer.echo(
            f"📦 {repository}  dedicated={pool['dedicated']} "
            f"dynamic={pool['dynamic']}/{pool['dynamic_ceiling']}"
        )
        for runner in pool["runners"]:
            flag = " 🚫 quarantined" if runner["quarantined"] else ""
            job = f" job={runner['current_job_id']}" if runner["current_job_id"] else ""
            typer.echo(f"   {runner['name']:<40} {runner['kind']:<10} {runner['state']:<13}{job}{flag}")
        for event in pool["recent_events"]:
            typer.echo(
                f"   {event['timestamp']}  {event['action']:<10} {event['reason']:<16} "
                f"{event['outcome']:<10} {event['instance_id'] or ''}"
            )


async def _run_controller(controller: GitHubRunnerController, terminate_on_exit: bool = False) -> None:
    """Run the controller until SIGTERM or SIGINT and always clean up."""
    loop = asyncio.get_running_loop()

    def on_signal(signum: signal.Signals) -> None:
        logger.info("Shutdown signal received", signal=signum.name)
        controller.request_shutdown()

    for signum in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(signum, on_signal, signum)
    try:
        await controller.start()
    except asyncio.CancelledError:
        logger.info("Controller task cancelled")
    except Exception as e:
        logger.error("Controller error", error=str(e))
        raise
    finally:
        for signum in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(signum)
        try:
            await controller.stop(terminate_runners=terminate_on_exit)
        except Exception as e:
            logger.error("Error during controller shutdown", error=str(e))


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
