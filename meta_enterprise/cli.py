"""Command line interface for enterprise authorization and secret governance."""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from . import config as enterprise_config
from .approval import (
    ApprovalGrantHook,
    ApprovalTokenCodec,
    create_approval_grant_token,
    create_approval_request_token,
    generate_approval_key,
    parse_ttl,
    validate_approval_grant_token,
)
from .audit import AuditLogSink, AuditPipeline
from .authz import authorize_command
from .commands import COMMAND_CAPABILITIES, COMMAND_TABLE_VERSION, requires_approval
from .config import quote
from .cutover import ModeCutoverRequest, cutover_legacy_config
from .errors import EnterpriseError, RequestError, handle_exception, handle_keyboard_interrupt
from .hooks import WebhookEnforcementHook
from .legacy import default_legacy_path
from .policy import evaluate_policy
from .secret_governance import evaluate_secret_access

console = Console()


def split_workspace_reference(org_name: Optional[str], workspace: Optional[str]) -> Tuple[str, str]:
    """Split ``--workspace org/ws`` into an org and workspace pair.

    Args:
        org_name: Value of ``--org``.
        workspace: Value of ``--workspace``, a bare name or ``org/workspace``.

    Returns:
        The org and workspace names to resolve.

    Raises:
        RequestError: If the reference is malformed or conflicts with ``--org``.
    """
    org_name = (org_name or "").strip()
    workspace = (workspace or "").strip()
    if "/" not in workspace:
        return org_name, workspace

    parts = workspace.split("/")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise RequestError(
            f"invalid --workspace value {quote(workspace)}; expected <workspace> or <org>/<workspace>"
        )
    ref_org, ref_workspace = parts[0].strip(), parts[1].strip()
    if org_name and org_name != ref_org:
        raise RequestError(f"workspace reference {quote(workspace)} conflicts with --org {quote(org_name)}")
    return ref_org, ref_workspace


def load_config(config_path: Optional[str]) -> enterprise_config.Config:
    path = Path(config_path) if config_path else enterprise_config.default_path()
    return enterprise_config.load(path)


def emit(data: Any) -> None:
    console.print_json(data=data, default=str)


def run_command(context: str, func: Callable[[], Any]) -> None:
    """Run a command body, printing its result as JSON or the error panel."""
    try:
        emit(func())
    except EnterpriseError as e:
        handle_exception(e, context)
    except KeyboardInterrupt:
        handle_keyboard_interrupt()


def config_option(func: Callable) -> Callable:
    return click.option('--config', 'config_path', default=None,
                        help='Path to enterprise config file')(func)


def workspace_options(func: Callable) -> Callable:
    func = click.option('--workspace', default='', help='Workspace name or org/workspace')(func)
    return click.option('--org', 'org_name', default='', help='Enterprise org name')(func)


@click.group()
@click.version_option(version=__version__)
@click.option('--verbose', '-v', is_flag=True, help='Log decisions to stderr')
def main(verbose: bool) -> None:
    """Meta CLI - enterprise authorization and secret governance."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.group()
def enterprise() -> None:
    """Enterprise org/workspace context commands."""
    pass


@enterprise.command()
@config_option
@workspace_options
def context(config_path: Optional[str], org_name: str, workspace: str) -> None:
    """Resolve enterprise workspace context."""
    def body() -> Any:
        org, ws = split_workspace_reference(org_name, workspace)
        return load_config(config_path).resolve_workspace(org, ws).to_dict()

    run_command("meta enterprise context", body)


@enterprise.command()
def capabilities() -> None:
    """List the compiled command to capability table."""
    run_command("meta enterprise capabilities", lambda: {
        'version': COMMAND_TABLE_VERSION,
        'commands': [
            {
                'command': command,
                'capability': COMMAND_CAPABILITIES[command],
                'high_risk': requires_approval(command),
            }
            for command in sorted(COMMAND_CAPABILITIES)
        ],
    })


@enterprise.group()
def authz() -> None:
    """Enterprise authorization checks."""
    pass


@authz.command(name='check')
@config_option
@click.option('--principal', required=True, help='Principal identity to evaluate')
@click.option('--command', 'command_ref', required=True,
              help='Command reference to authorize (for example "api get")')
@workspace_options
@click.option('--approval-token', default='', help='Approval grant token for high-risk commands')
@click.option('--require-approval', is_flag=True, help='Require an approval grant for high-risk commands')
@click.option('--correlation-id', default='', help='Correlation id linking decision and execution audit events')
@click.option('--execution-status', type=click.Choice(['succeeded', 'failed']), default=None,
              help='Execution status to record')
@click.option('--execution-error', default='', help='Execution failure reason (required when status is failed)')
@click.option('--audit-dir', type=click.Path(file_okay=False), default=None,
              help='Append audit events to <dir>/audit.log')
def authz_check(
    config_path: Optional[str],
    principal: str,
    command_ref: str,
    org_name: str,
    workspace: str,
    approval_token: str,
    require_approval: bool,
    correlation_id: str,
    execution_status: Optional[str],
    execution_error: str,
    audit_dir: Optional[str],
) -> None:
    """Evaluate command authorization in an enterprise workspace."""
    def body() -> Any:
        if execution_error.strip() and not execution_status:
            raise RequestError("execution status is required when execution error is provided")
        org, ws = split_workspace_reference(org_name, workspace)
        cfg = load_config(config_path)

        pipeline = None
        if correlation_id.strip() or execution_status or audit_dir:
            sink = AuditLogSink(Path(audit_dir)) if audit_dir else None
            pipeline = AuditPipeline(sink=sink)

        trace = authorize_command(
            cfg,
            principal,
            command_ref,
            org_name=org,
            workspace_name=ws,
            correlation_id=correlation_id,
            audit_pipeline=pipeline,
            approval_token=approval_token,
            require_approval=require_approval,
        )
        if execution_status:
            trace.audit_events.append(pipeline.record_execution(
                trace.principal,
                trace.normalized_command,
                trace.required_capability,
                trace.org_name,
                trace.workspace_name,
                execution_status,
                execution_error,
                trace.correlation_id,
            ))
        return trace.to_dict()

    run_command("meta enterprise authz check", body)


@enterprise.group()
def policy() -> None:
    """Enterprise policy evaluation."""
    pass


@policy.command(name='eval')
@config_option
@click.option('--principal', required=True, help='Principal identity to evaluate')
@click.option('--capability', required=True, help='Capability to evaluate (for example "graph.read")')
@workspace_options
def policy_eval(config_path: Optional[str], principal: str, capability: str, org_name: str, workspace: str) -> None:
    """Evaluate enterprise policy for a capability."""
    def body() -> Any:
        org, ws = split_workspace_reference(org_name, workspace)
        return evaluate_policy(load_config(config_path), principal, capability, org, ws).to_dict()

    run_command("meta enterprise policy eval", body)


@enterprise.group()
def secret() -> None:
    """Governed secret access checks."""
    pass


@secret.command(name='check')
@config_option
@click.option('--principal', required=True, help='Principal requesting access')
@click.option('--secret', 'secret_name', required=True, help='Governed secret name')
@click.option('--action', type=click.Choice(['read', 'write', 'rotate'], case_sensitive=False),
              required=True, help='Secret action')
@workspace_options
@click.option('--webhook', 'webhooks', multiple=True, help='Approval webhook URL consulted after baseline access')
@click.option('--grant-token', default='', help='Approval grant token required for access')
@click.option('--grant-command', default='', help='Command the grant token was issued for')
def secret_check(
    config_path: Optional[str],
    principal: str,
    secret_name: str,
    action: str,
    org_name: str,
    workspace: str,
    webhooks: Tuple[str, ...],
    grant_token: str,
    grant_command: str,
) -> None:
    """Evaluate access to a governed secret."""
    def body() -> Any:
        if grant_token and not grant_command.strip():
            raise RequestError("--grant-command is required when --grant-token is provided")
        org, ws = split_workspace_reference(org_name, workspace)
        hooks: list = [WebhookEnforcementHook(url) for url in webhooks]
        if grant_token:
            hooks.append(ApprovalGrantHook(grant_token, grant_command))
        return evaluate_secret_access(
            load_config(config_path), principal, secret_name, action, org, ws, hooks=hooks
        ).to_dict()

    run_command("meta enterprise secret check", body)


@enterprise.group()
def approval() -> None:
    """Enterprise approval grants for high-risk commands."""
    pass


@approval.command(name='request')
@config_option
@click.option('--principal', required=True, help='Principal requesting approval')
@click.option('--command', 'command_ref', required=True,
              help='Command reference to approve (for example "auth rotate")')
@workspace_options
@click.option('--ttl', default='15m', show_default=True, help='Request token TTL (for example 15m, 1h)')
def approval_request(config_path: Optional[str], principal: str, command_ref: str,
                     org_name: str, workspace: str, ttl: str) -> None:
    """Create an approval request token for a command."""
    def body() -> Any:
        org, ws = split_workspace_reference(org_name, workspace)
        resolved = load_config(config_path).resolve_workspace(org, ws)
        return create_approval_request_token(
            principal, command_ref, resolved.org_name, resolved.workspace_name,
            parse_ttl(ttl), codec=ApprovalTokenCodec(),
        ).to_dict()

    run_command("meta enterprise approval request", body)


@approval.command(name='approve')
@click.option('--request-token', required=True, help='Approval request token')
@click.option('--approver', required=True, help='Approver principal')
@click.option('--decision', type=click.Choice(['approved', 'rejected']), required=True, help='Decision')
@click.option('--ttl', default='15m', show_default=True, help='Grant token TTL (for example 15m, 1h)')
def approval_approve(request_token: str, approver: str, decision: str, ttl: str) -> None:
    """Approve or reject an approval request token."""
    run_command("meta enterprise approval approve", lambda: create_approval_grant_token(
        request_token, approver, decision, parse_ttl(ttl), codec=ApprovalTokenCodec(),
    ).to_dict())


@approval.command(name='validate')
@config_option
@click.option('--grant-token', required=True, help='Approval grant token')
@click.option('--principal', required=True, help='Principal executing the command')
@click.option('--command', 'command_ref', required=True, help='Command reference to validate')
@workspace_options
def approval_validate(config_path: Optional[str], grant_token: str, principal: str,
                      command_ref: str, org_name: str, workspace: str) -> None:
    """Validate an approval grant token against command context."""
    def body() -> Any:
        org, ws = split_workspace_reference(org_name, workspace)
        resolved = load_config(config_path).resolve_workspace(org, ws)
        return validate_approval_grant_token(
            grant_token, principal, command_ref, resolved.org_name, resolved.workspace_name,
            codec=ApprovalTokenCodec(),
        ).to_dict()

    run_command("meta enterprise approval validate", body)


@approval.command(name='keygen')
def approval_keygen() -> None:
    """Print a new approval signing key for META_APPROVAL_KEY."""
    run_command("meta enterprise approval keygen", lambda: {'approval_key': generate_approval_key()})


@enterprise.group()
def mode() -> None:
    """Enterprise mode management."""
    pass


@mode.command(name='cutover')
@click.option('--legacy-config', default=None, help='Path to legacy CLI config (default ~/.meta/config.yaml)')
@config_option
@click.option('--org', 'org_name', required=True, help='Enterprise org name')
@click.option('--org-id', required=True, help='Enterprise org id')
@click.option('--workspace', required=True, help='Workspace name')
@click.option('--workspace-id', required=True, help='Workspace id')
@click.option('--principal', required=True, help='Principal bound to the bootstrap role')
@click.option('--force', is_flag=True, help='Overwrite an existing enterprise config')
def mode_cutover(legacy_config: Optional[str], config_path: Optional[str], org_name: str, org_id: str,
                 workspace: str, workspace_id: str, principal: str, force: bool) -> None:
    """Migrate a legacy profile config to enterprise mode."""
    run_command("meta enterprise mode cutover", lambda: cutover_legacy_config(ModeCutoverRequest(
        legacy_config_path=legacy_config or str(default_legacy_path()),
        enterprise_config_path=config_path or str(enterprise_config.default_path()),
        org_name=org_name,
        org_id=org_id,
        workspace_name=workspace,
        workspace_id=workspace_id,
        principal=principal,
        force=force,
    )).to_dict())


if __name__ == '__main__':
    main()
