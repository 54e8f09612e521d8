#!/usr/bin/env python3
"""Plugin management CLI tool."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from aihost.constants import PLUGIN_REGISTRY_FILE, PLUGIN_SETTINGS_FILE, PLUGINS_DIR
from aihost.plugins.discovery import PluginDiscovery
from aihost.plugins.errors import PluginHostError
from aihost.plugins.loader import pack_plugin, read_package_manifest
from aihost.plugins.manager import PluginManager


def get_discovery() -> PluginDiscovery:
    """Create a PluginDiscovery instance."""
    return PluginDiscovery(PLUGINS_DIR, PLUGIN_REGISTRY_FILE)


def get_manager() -> PluginManager:
    """Create a PluginManager instance."""
    return PluginManager(PLUGINS_DIR, PLUGIN_SETTINGS_FILE, PLUGIN_REGISTRY_FILE)


def cmd_list(args):
    """List all discovered plugin packages."""
    packages = get_discovery().discover_all()

    if not packages:
        print("No plugins found.")
        return

    print(f"{'Name':<24} {'Version':<12} {'Author':<20} {'Package'}")
    print("-" * 90)

    for path in packages:
        try:
            manifest = read_package_manifest(path)
        except PluginHostError as e:
            print(f"{'?':<24} {'?':<12} {'?':<20} {path.name}  (invalid: {e})")
            continue
        print(f"{manifest.name:<24} {manifest.version:<12} {manifest.author:<20} {path.name}")


def cmd_info(args):
    """Show detailed plugin information."""
    try:
        manifest = read_package_manifest(Path(args.path))
    except PluginHostError as e:
        print(f"Invalid plugin package: {e}")
        sys.exit(1)

    print(f"Plugin: {manifest.name}")
    print(f"  Version:      {manifest.version}")
    print(f"  Author:       {manifest.author}")
    print(f"  Description:  {manifest.description}")
    if manifest.dependencies:
        print(f"  Dependencies: {json.dumps(manifest.dependencies)}")
    for param in manifest.parameters:
        print(f"  Parameter:    {param.id} ({param.type.value}) - {param.name}")


def cmd_models(args):
    """Load a plugin and print its model catalog."""
    manager = get_manager()
    try:
        plugin = manager.load_plugin(Path(args.path))
        models = asyncio.run(manager.list_models(plugin.name))
    except PluginHostError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        manager.shutdown()

    for model in models:
        print(f"{model.id:<32} {model.name}")


def cmd_prompt(args):
    """Load a plugin and send it a single user message."""
    manager = get_manager()
    history = [{"role": "user", "content": args.message}]
    try:
        plugin = manager.load_plugin(Path(args.path))
        reply = asyncio.run(manager.send_prompt(plugin.name, None, history, args.model))
    except PluginHostError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        manager.shutdown()

    print(reply)


def cmd_pack(args):
    """Pack a plugin directory into a .ai archive."""
    dest = Path(args.output) if args.output else None
    try:
        archive = pack_plugin(Path(args.source), dest)
    except PluginHostError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Packed {archive}")


def cmd_doctor(args):
    """Run health checks on the plugin system."""
    issues = []

    # Check directories
    if not PLUGINS_DIR.exists():
        issues.append(f"Plugin directory missing: {PLUGINS_DIR}")

    # Check settings file
    if PLUGIN_SETTINGS_FILE.exists():
        try:
            with open(PLUGIN_SETTINGS_FILE) as f:
                json.load(f)
        except json.JSONDecodeError as e:
            issues.append(f"Plugin settings file has invalid JSON: {e}")

    # Validate every package manifest
    packages = get_discovery().discover_all()
    for path in packages:
        try:
            read_package_manifest(path)
        except PluginHostError as e:
            issues.append(f"{path.name}: {e}")

    if issues:
        print(f"Found {len(issues)} issue(s):")
        for i, issue in enumerate(issues, 1):
            print(f"  {i}. {issue}")
        sys.exit(1)
    else:
        print(f"All checks passed. {len(packages)} plugin package(s) found.")


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s - %(message)s")

    parser = argparse.ArgumentParser(description="AI Plugin Host Manager")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # list
    subparsers.add_parser("list", help="List all plugin packages")

    # info
    info_parser = subparsers.add_parser("info", help="Show plugin package details")
    info_parser.add_argument("path", help="Path to a .ai archive or plugin directory")

    # models
    models_parser = subparsers.add_parser("models", help="List a plugin's models")
    models_parser.add_argument("path", help="Path to a .ai archive or plugin directory")

    # prompt
    prompt_parser = subparsers.add_parser("prompt", help="Send a message to a plugin")
    prompt_parser.add_argument("path", help="Path to a .ai archive or plugin directory")
    prompt_parser.add_argument("message", help="User message")
    prompt_parser.add_argument("--model", default=None, help="Model id")

    # pack
    pack_parser = subparsers.add_parser("pack", help="Pack a plugin directory into a .ai archive")
    pack_parser.add_argument("source", help="Plugin directory")
    pack_parser.add_argument("-o", "--output", default=None, help="Archive path")

    # doctor
    subparsers.add_parser("doctor", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "list": cmd_list,
        "info": cmd_info,
        "models": cmd_models,
        "prompt": cmd_prompt,
        "pack": cmd_pack,
        "doctor": cmd_doctor,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
