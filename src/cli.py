#!/usr/bin/env python3
"""CLI entry point for the orchestrator.

Commands:
- run:      Enqueue one operation and follow its output
- build:    Run the build lifecycle (infra -> ssh -> provision -> db -> deploy)
- destroy:  Run the destroy lifecycle
- ops:      Operation history (list/show/cancel/resume)
- vms:      Environment VMs on Proxmox (list/destroy)
- secrets:  Credential management (generate/verify)

Exit codes: 0 success, 1 failure, 2 input error.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from actions.proxmox import ProxmoxClient, ProxmoxError
from config import ConfigError, OrchestratorConfig, load_config
from credentials import generate_env_secrets, verify_shared_secrets
from manifest import AppRegistry
from operations.broadcaster import DONE, LOG, OutputBroadcaster
from operations.errors import InputError, OrchestratorError
from operations.executor import ProcessExecutor
from operations.models import STATUSES, SUCCESS
from operations.pipeline import BUILD_STEPS, LifecycleRunner
from operations.scheduler import Scheduler
from operations.store import OperationStore
from vault import SecretStoreError, VaultClient

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INPUT = 2

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Logs go to stderr; stdout carries operation output and --json documents."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(stderr_handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


class Runtime:
    """Wires store, broadcaster, executor, scheduler and lifecycle runner together."""

    def __init__(self, config: OrchestratorConfig):
        self.config = config
        self.registry = AppRegistry(config.apps_dir)
        self.registry.load()
        self.vault = VaultClient.from_config(config)
        self.store = OperationStore(config.db_path)
        self.broadcaster = OutputBroadcaster()
        self.executor = ProcessExecutor(config, self.store, self.broadcaster, self.registry, self.vault)
        self.scheduler = Scheduler(self.store, self.executor, self.broadcaster, self.registry)
        self.lifecycle = LifecycleRunner(config, self.scheduler, self.registry, self.vault)

    def close(self) -> None:
        self.store.close()


def parse_vars(pairs: Optional[list[str]]) -> dict:
    """k=v pairs into a dict.

    Raises:
        InputError: A pair has no '='
    """
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise InputError(f"Invalid --var '{pair}' (expected key=value)")
        result[key] = value
    return result


async def follow(scheduler: Scheduler, op_id: str, echo: bool = True) -> str:
    """Stream an operation's output to stdout until done; returns the final status."""
    status = None
    async for event in scheduler.stream(op_id):
        if event.event == LOG and echo:
            sys.stdout.write(event.data['text'])
            sys.stdout.flush()
        elif event.event == DONE:
            status = event.data['status']
    return status


def _print_op(op, as_json: bool) -> None:
    if as_json:
        print(json.dumps(op.to_dict(), indent=2))
        return
    print(f"ID:         {op.id}")
    print(f"Resource:   {op.app}:{op.env}")
    print(f"Type:       {op.type}")
    print(f"Status:     {op.status}")
    if op.ref:
        print(f"Ref:        {op.ref}")
    if op.initiated_by:
        print(f"Initiated:  {op.initiated_by}")
    print(f"Created:    {op.created_at.isoformat() if op.created_at else '-'}")
    if op.duration_ms is not None:
        print(f"Duration:   {op.duration_ms / 1000:.1f}s")
    if op.error:
        print(f"Error:      {op.error}")
    if op.output:
        print()
        print(op.output, end='' if op.output.endswith('\n') else '\n')


async def cmd_run(rt: Runtime, args) -> int:
    op_id = rt.scheduler.enqueue(
        args.app, args.env, args.type,
        ref=args.ref,
        vars=parse_vars(args.var),
        callback_url=args.callback_url,
        initiated_by=args.initiated_by,
    )
    logger.info(f"Operation {op_id} queued")
    status = await follow(rt.scheduler, op_id, echo=not args.json)
    await rt.scheduler.wait_idle()
    if args.json:
        print(json.dumps(rt.store.get(op_id).to_dict(), indent=2))
    return EXIT_OK if status == SUCCESS else EXIT_FAILED


async def _follow_all(rt: Runtime, op_ids: list[str]) -> int:
    failed = []
    for op_id in op_ids:
        status = await follow(rt.scheduler, op_id)
        if status != SUCCESS:
            failed.append(op_id)
    await rt.scheduler.wait_idle()
    if failed:
        print(f"\n{len(failed)} of {len(op_ids)} operations did not succeed: {', '.join(failed)}")
        return EXIT_FAILED
    return EXIT_OK


async def cmd_build(rt: Runtime, args) -> int:
    result = await rt.lifecycle.build_environment(
        args.app, args.env, ref=args.ref, force=args.force, resume_from=args.resume_from,
    )
    print(result.message)
    return await _follow_all(rt, result.operations)


async def cmd_destroy(rt: Runtime, args) -> int:
    result = await rt.lifecycle.destroy_environment(args.app, args.env, ref=args.ref)
    print(result.message)
    return await _follow_all(rt, result.operations)


async def cmd_ops(rt: Runtime, args) -> int:
    if args.action == 'list':
        ops = rt.store.list(app=args.app, env=args.env, status=args.status,
                            limit=args.limit, offset=args.offset)
        if args.json:
            print(json.dumps([op.to_dict(include_output=False) for op in ops], indent=2))
            return EXIT_OK
        if not ops:
            print("No operations")
            return EXIT_OK
        for op in ops:
            created = op.created_at.strftime('%Y-%m-%d %H:%M:%S') if op.created_at else '-'
            print(f"{op.id}  {created}  {op.app + ':' + str(op.env):<24} {op.type:<20} {op.status}")
        return EXIT_OK

    if args.action == 'show':
        op = rt.store.get(args.id)
        if op is None:
            raise InputError(f"Operation not found: {args.id}")
        _print_op(op, args.json)
        return EXIT_OK

    if args.action == 'cancel':
        if rt.store.get(args.id) is None:
            raise InputError(f"Operation not found: {args.id}")
        if await rt.scheduler.cancel(args.id):
            print(f"Cancelled {args.id}")
            return EXIT_OK
        print(f"Operation {args.id} is not queued; running operations are cancelled by the process executing them")
        return EXIT_FAILED

    if args.action == 'resume':
        # Only safe while no other orchestrator process uses the same database
        stale = rt.scheduler.start()
        for op_id in stale:
            print(f"Marked stale running operation {op_id} as failed")
        queued = rt.store.list(status='queued', limit=1000)
        print(f"Resuming {len(queued)} queued operations")
        await rt.scheduler.wait_idle()
        return EXIT_OK

    return EXIT_INPUT


async def cmd_vms(rt: Runtime, args) -> int:
    env_config = rt.registry.get_environment(args.app, args.env)
    if env_config is None:
        raise InputError(f"Unknown environment: {args.app}:{args.env}")
    proxmox = ProxmoxClient.from_secrets(await rt.vault.read_shared())

    if args.action == 'list':
        vms = await proxmox.find_resources_for_environment(args.app, args.env, env_config)
        if not vms:
            print(f"No VMs found for {args.app}:{args.env}")
        for vm in vms:
            print(f"{vm['vmid']:<8} {vm['name']:<32} {vm['node']:<12} {vm['role']:<10} {vm['status']}")
        return EXIT_OK

    if args.action == 'destroy':
        result = await proxmox.destroy_resources_for_environment(args.app, args.env, env_config)
        print(f"Destroyed: {', '.join(result['destroyed']) or '-'}")
        print(f"Skipped:   {', '.join(result['skipped']) or '-'}")
        return EXIT_FAILED if result['skipped'] else EXIT_OK

    return EXIT_INPUT


async def cmd_secrets(rt: Runtime, args) -> int:
    if args.action == 'generate':
        if rt.registry.get_environment(args.app, args.env) is None:
            raise InputError(f"Unknown environment: {args.app}:{args.env}")
        result = await generate_env_secrets(rt.vault, args.app, args.env, force=args.force)
        state = 'generated' if result['created'] else 'already exist (use --force to regenerate)'
        print(f"Secrets at {result['path']}: {state}")
        return EXIT_OK

    if args.action == 'verify':
        try:
            await verify_shared_secrets(rt.vault)
        except ValueError as e:
            print(f"Error: {e}")
            return EXIT_FAILED
        print(f"Shared secrets at {rt.vault.shared_path}: OK")
        return EXIT_OK

    return EXIT_INPUT


COMMANDS = {
    'run': cmd_run,
    'build': cmd_build,
    'destroy': cmd_destroy,
    'ops': cmd_ops,
    'vms': cmd_vms,
    'secrets': cmd_secrets,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', type=Path, help='Config file (default: $ORCHESTRATOR_CONFIG or <home>/orchestrator.yaml)')
    common.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    parser = argparse.ArgumentParser(
        prog='orchestrator',
        description='Infrastructure orchestrator: provision, deploy and tear down app environments',
    )
    sub = parser.add_subparsers(dest='command')

    run = sub.add_parser('run', parents=[common], help='Enqueue one operation and follow it')
    run.add_argument('app')
    run.add_argument('env')
    run.add_argument('type', help='Operation type (e.g. deploy, infra-apply, db-migrate)')
    run.add_argument('--ref', help='Git ref to check out (default: environment auto-deploy branch)')
    run.add_argument('--var', action='append', metavar='KEY=VALUE', help='Variable passed to the tool (repeatable)')
    run.add_argument('--callback-url', help='Webhook notified with the terminal status')
    run.add_argument('--initiated-by', default='cli', help='Provenance recorded on the operation')
    run.add_argument('--json', action='store_true', help='Print the final operation as JSON instead of streaming')

    build = sub.add_parser('build', parents=[common], help='Build an environment end to end')
    build.add_argument('app')
    build.add_argument('env')
    build.add_argument('--ref')
    build.add_argument('--force', action='store_true', help='Tear down orphaned VMs and regenerate credentials')
    build.add_argument('--resume-from', choices=[name for name, _ in BUILD_STEPS], help='Skip steps before this one')

    destroy = sub.add_parser('destroy', parents=[common], help='Destroy an environment')
    destroy.add_argument('app')
    destroy.add_argument('env')
    destroy.add_argument('--ref')

    ops = sub.add_parser('ops', help='Operation history')
    ops.set_defaults(group=ops)
    ops_sub = ops.add_subparsers(dest='action')
    ops_list = ops_sub.add_parser('list', parents=[common])
    ops_list.add_argument('--app')
    ops_list.add_argument('--env')
    ops_list.add_argument('--status', choices=STATUSES)
    ops_list.add_argument('--limit', type=int, default=50)
    ops_list.add_argument('--offset', type=int, default=0)
    ops_list.add_argument('--json', action='store_true')
    ops_show = ops_sub.add_parser('show', parents=[common])
    ops_show.add_argument('id')
    ops_show.add_argument('--json', action='store_true')
    ops_cancel = ops_sub.add_parser('cancel', parents=[common])
    ops_cancel.add_argument('id')
    ops_sub.add_parser('resume', parents=[common], help='Fail stale running operations and run queued ones')

    vms = sub.add_parser('vms', help='Environment VMs')
    vms.set_defaults(group=vms)
    vms_sub = vms.add_subparsers(dest='action')
    for action in ('list', 'destroy'):
        p = vms_sub.add_parser(action, parents=[common])
        p.add_argument('app')
        p.add_argument('env')

    secrets = sub.add_parser('secrets', help='Credential management')
    secrets.set_defaults(group=secrets)
    secrets_sub = secrets.add_subparsers(dest='action')
    gen = secrets_sub.add_parser('generate', parents=[common])
    gen.add_argument('app')
    gen.add_argument('env')
    gen.add_argument('--force', action='store_true')
    secrets_sub.add_parser('verify', parents=[common])

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_INPUT
    if getattr(args, 'group', None) and not args.action:
        args.group.print_help()
        return EXIT_INPUT

    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    rt = Runtime(config)
    try:
        return asyncio.run(COMMANDS[args.command](rt, args))
    except InputError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INPUT
    except (OrchestratorError, SecretStoreError, ProxmoxError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILED
    finally:
        rt.close()


if __name__ == '__main__':
    sys.exit(main())
