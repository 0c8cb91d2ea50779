import threading

import typer
from loguru import logger

from drainsafe import config
from drainsafe.errors import ConfigurationError
from drainsafe.logger_config import setup_logger
from drainsafe.manager import install_signal_handlers, run_agent, run_controller

app = typer.Typer(help="Cordon and drain nodes ahead of Azure scheduled maintenance.")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", envvar="DRAINSAFE_LOG_LEVEL", help="Log level"),
    json_logs: bool = typer.Option(False, envvar="DRAINSAFE_JSON_LOGS", help="Emit serialized log records"),
):
    setup_logger(log_level, json_logs)


def _run(role, settings: config.Settings, require_node: bool) -> None:
    try:
        settings.validate(require_node=require_node)
        stop = threading.Event()
        install_signal_handlers(stop)
        role(settings, stop)
    except ConfigurationError as e:
        logger.critical(f"Startup failed: {e}")
        raise typer.Exit(code=1)


@app.command()
def controller(
    pod_name: str = typer.Option(config.POD_NAME, envvar="POD_NAME", help="Pod identity used in events"),
    owner: str = typer.Option(config.DEFAULT_OWNER, envvar="DRAINSAFE_OWNER",
                              help="Value written to the maintenance owner annotation"),
    repairman: bool = typer.Option(False, envvar="DRAINSAFE_REPAIRMAN",
                                   help="Hold maintenance until repairman approves it"),
    event_namespace: str = typer.Option(config.DEFAULT_EVENT_NAMESPACE, envvar="DRAINSAFE_EVENT_NAMESPACE"),
    kubeconfig: str = typer.Option("", envvar="KUBECONFIG", help="Kube config file for out of cluster runs"),
):
    """Drive every node through cordon, drain and uncordon."""
    settings = config.Settings(
        node_name="",
        pod_name=pod_name,
        owner=owner,
        repairman=repairman,
        event_namespace=event_namespace,
        kubeconfig=kubeconfig,
    )
    _run(run_controller, settings, require_node=False)


@app.command()
def agent(
    node_name: str = typer.Option(config.NODE_NAME, envvar="NODE_NAME", help="Node this agent runs on"),
    pod_name: str = typer.Option(config.POD_NAME, envvar="POD_NAME", help="Pod identity used in events"),
    metadata_url: str = typer.Option(config.DEFAULT_METADATA_URL, envvar="DRAINSAFE_METADATA_URL"),
    metadata_timeout: float = typer.Option(config.DEFAULT_TIMEOUT, envvar="DRAINSAFE_METADATA_TIMEOUT"),
    poll_interval: float = typer.Option(config.DEFAULT_POLL_INTERVAL, envvar="DRAINSAFE_POLL_INTERVAL",
                                        help="Seconds between scheduled event checks"),
    event_namespace: str = typer.Option(config.DEFAULT_EVENT_NAMESPACE, envvar="DRAINSAFE_EVENT_NAMESPACE"),
    kubeconfig: str = typer.Option("", envvar="KUBECONFIG", help="Kube config file for out of cluster runs"),
):
    """Watch this node's scheduled events and approve them once it is drained."""
    settings = config.Settings(
        node_name=node_name,
        pod_name=pod_name,
        metadata_url=metadata_url,
        metadata_timeout=metadata_timeout,
        poll_interval=poll_interval,
        event_namespace=event_namespace,
        kubeconfig=kubeconfig,
    )
    _run(run_agent, settings, require_node=True)
