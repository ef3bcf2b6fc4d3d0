#!/usr/bin/env python
"""
The main module provides the executable entrypoint for the gateway operator
"""

# Standard
from typing import Dict, List, Optional
import argparse
import os
import signal
import threading

# Third Party
import yaml

# First Party
import aconfig
import alog

# Local
from . import config
from .certificates import ensure_ca_secret
from .config import library_config
from .controllers import ALL_CONTROLLERS
from .deploy_manager import (
    DeployManagerBase,
    DryRunDeployManager,
    OpenshiftDeployManager,
)
from .managed_object import ManagedObject
from .manager import OwnerKey, WorkerPool, create_feeds
from .reconcile import ReconcileManager
from .resources.defaults import ResourceDefaults

## Constants ###################################################################

log = alog.use_channel("MAIN")

## Helpers #####################################################################


def add_library_config_args(parser, config_obj=None, path=None) -> Dict[str, List[str]]:
    """Automatically add args for all elements of the library config"""
    path = path or []
    setters = {}
    config_obj = config_obj or library_config
    for key, val in config_obj.items():
        sub_path = path + [key]

        # If this is a nested arg, recurse
        if isinstance(val, aconfig.AttributeAccessDict):
            setters.update(
                add_library_config_args(parser, config_obj=val, path=sub_path)
            )
            continue

        arg_name = ".".join(sub_path)
        dest_name = "_".join(sub_path)
        kwargs = {
            "default": val,
            "dest": dest_name,
            "help": f"Library config override for {arg_name}",
        }
        if isinstance(val, list):
            kwargs["nargs"] = "*"
        elif isinstance(val, bool):
            kwargs["action"] = "store_true"
        elif val is not None:
            kwargs["type"] = type(val)
        parser.add_argument(f"--{arg_name}", **kwargs)
        setters[dest_name] = sub_path
    return setters


def update_library_config(args: argparse.Namespace, setters: Dict[str, List[str]]):
    """Update the library config values based on the parsed arguments"""
    for dest_name, config_path in setters.items():
        config_obj = library_config
        while len(config_path) > 1:
            config_obj = config_obj[config_path[0]]
            config_path = config_path[1:]
        config_obj[config_path[0]] = getattr(args, dest_name)


def parse_resource_dir(resource_dir: Optional[str]) -> List[dict]:
    """If given, this will parse all yaml files found in the given directory"""
    all_resources = []
    if resource_dir is not None:
        for fname in sorted(os.listdir(resource_dir)):
            if fname.endswith(".yaml") or fname.endswith(".yml"):
                resource_path = os.path.join(resource_dir, fname)
                log.debug3("Reading resource file [%s]", resource_path)
                with open(resource_path, encoding="utf-8") as handle:
                    all_resources.extend(
                        doc for doc in yaml.safe_load_all(handle) if doc
                    )
    return all_resources


def make_deploy_manager(resources: List[dict]) -> DeployManagerBase:
    if config.dry_run:
        log.info("Running DRY RUN")
        return DryRunDeployManager(resources=resources)
    return OpenshiftDeployManager(
        request_timeout=float(config.request_timeout_seconds)
    )


def wait_settled(pool: WorkerPool, stop: threading.Event, settle_seconds: float):
    """Block until no reconcile has finished for settle_seconds"""
    completed = -1
    while not stop.is_set() and completed != pool.completed:
        completed = pool.completed
        pool.wait_idle()
        stop.wait(settle_seconds)


## Commands ####################################################################


def run(args: argparse.Namespace):
    """Run the operator until interrupted. With --cr in dry run mode, apply
    the CR, wait for the reconciles to settle and log its final status.
    """
    assert args.cr is None or (
        config.dry_run and os.path.isfile(args.cr)
    ), "Can only specify --cr with dry run and it must point to a valid file"
    assert args.resource_dir is None or (
        config.dry_run and os.path.isdir(args.resource_dir)
    ), "Can only specify --resource_dir with dry run and it must point to a valid directory"

    deploy_manager = make_deploy_manager(parse_resource_dir(args.resource_dir))
    defaults = ResourceDefaults.from_config()
    if ensure_ca_secret(deploy_manager, defaults.cluster_ca):
        log.info("Created cluster CA secret %s", defaults.cluster_ca)

    controllers = [
        controller_type(deploy_manager, defaults) for controller_type in ALL_CONTROLLERS
    ]
    pool = WorkerPool(controllers, deploy_manager, reconcile_manager=ReconcileManager())
    feeds = create_feeds(
        pool.submit,
        deploy_manager,
        {controller.kind: controller.api_version for controller in controllers},
        namespace=config.watch_namespace or None,
    )

    # Register the signal handler to stop the watches
    stop = threading.Event()

    def do_stop(*_, **__):  # pragma: no cover
        stop.set()

    signal.signal(signal.SIGINT, do_stop)
    signal.signal(signal.SIGTERM, do_stop)

    log.info("Starting %d watches", len(feeds))
    pool.start()
    for feed in feeds:
        feed.start_thread()

    try:
        if args.cr:
            log.info("Applying CR [%s]", args.cr)
            with open(args.cr, encoding="utf-8") as handle:
                cr_manifest = yaml.safe_load(handle)
            cr_manifest.setdefault("metadata", {}).setdefault("namespace", "default")
            success, content = deploy_manager.create_object(cr_manifest)
            assert success, f"Failed to apply {args.cr}"
            owner = ManagedObject(content)
            pool.submit(OwnerKey(owner.kind, owner.namespace, owner.name))
            wait_settled(pool, stop, float(config.watch_reconnect_seconds))
            _, content = deploy_manager.get_object_current_state(
                kind=owner.kind,
                name=owner.name,
                namespace=owner.namespace,
                api_version=owner.api_version,
            )
            log.info("Final status:\n%s", yaml.safe_dump((content or {}).get("status")))
        else:
            stop.wait()
    finally:
        log.info("SHUTTING DOWN")
        for feed in feeds:
            feed.stop_thread()
        pool.stop()


## Main ########################################################################


def main():
    """The main module provides the executable entrypoint for the gateway
    operator
    """
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(help="Available commands", dest="command")
    run_parser = subparsers.add_parser("run", help=run.__doc__)
    run_parser.set_defaults(func=run)
    runtime_args = run_parser.add_argument_group("Runtime Configuration")
    runtime_args.add_argument(
        "--cr",
        "-c",
        default=None,
        help="(dry run) A CR manifest yaml to apply directly",
    )
    runtime_args.add_argument(
        "--resource_dir",
        "-r",
        default=None,
        help="(dry run) Path to a directory of yaml files that should exist in the cluster",
    )
    library_config_setters = add_library_config_args(
        run_parser.add_argument_group("Library Configuration")
    )

    # Use a preliminary parser to check for the presence of a command and fall
    # back to the default command if not found
    check_parser = argparse.ArgumentParser(add_help=False)
    check_parser.add_argument("command", nargs="?")
    check_args, _ = check_parser.parse_known_args()
    if check_args.command not in subparsers.choices:
        args = run_parser.parse_args()
    else:
        args = parser.parse_args()

    # Provide overrides to the library configs
    update_library_config(args, library_config_setters)
    ReconcileManager.configure_logging()

    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
