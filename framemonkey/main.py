# main.py
# Command line entry point: framemonkey --scripts DIR --url URL [--headless]

import argparse
import sys

from framemonkey import state
from framemonkey.constants import APP_NAME, VERSION
from framemonkey.error_reporter import logger, configure_logging, log_startup_error


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="framemonkey",
        description="Inject userscripts into the frames of a page opened in Chrome.",
    )
    parser.add_argument("--url", help="Host page whose iframes receive the scripts")
    parser.add_argument("--scripts", help="Directory of *.user.js files (default: scripts_dir setting)")
    parser.add_argument("--settings", help="Path of settings.ini")
    parser.add_argument("--headless", action="store_true", default=None, help="Run Chrome headless")
    parser.add_argument("--install", metavar="URL", action="append", default=[],
                        help="Install a userscript from URL into the scripts directory")
    parser.add_argument("--update", action="store_true", help="Check every script for updates first")
    parser.add_argument("--log-level", help="Console log level (DEBUG, INFO, ...)")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {VERSION}")
    return parser.parse_args(argv)


def _load_config(args):
    from framemonkey.settings import load_settings
    state.settings = load_settings(args.settings)
    configure_logging(
        args.log_level or state.settings.get('log_level', 'INFO'),
        state.settings.get('log_file') or None,
    )


def _load_scripts(args):
    from framemonkey.script_store import ScriptStore
    from framemonkey.utils import get_path

    scripts_dir = get_path(args.scripts or state.settings.get('scripts_dir'))
    state.store = ScriptStore()
    state.store.load_directory(scripts_dir)
    return scripts_dir


def _update_userscripts(args, scripts_dir):
    from framemonkey.userscript_updater import install_from_url, update_all

    timeout = state.settings.request_timeout
    changed = False
    for url in args.install:
        changed = install_from_url(state.store, url, timeout) is not None or changed
    if args.update:
        results = update_all(state.store, timeout)
        changed = changed or results["updated"] > 0
    if changed:
        state.store.save_directory(scripts_dir)


def _open_storage():
    from framemonkey.kv_storage import JsonFileStorage
    from framemonkey.utils import get_path

    state.storage = JsonFileStorage(get_path(state.settings.get('storage_file')))


def start(argv=None):
    args = parse_args(argv)

    try:
        _load_config(args)
        logger.info("=" * 60)
        logger.info(f"{APP_NAME} v{VERSION} starting...")
        scripts_dir = _load_scripts(args)
        if args.install or args.update:
            _update_userscripts(args, scripts_dir)
        _open_storage()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        log_startup_error(e)
        return 1

    if not args.url:
        # nothing to drive; install/update only
        if not (args.install or args.update):
            logger.error("No --url given")
            return 2
        return 0

    from framemonkey import launcher
    from framemonkey.injection_coordinator import InjectionCoordinator

    headless = state.settings.headless if args.headless is None else args.headless
    try:
        launcher.install_chromedriver()
        driver = launcher.launch_browser(args.url, headless=headless)
    except Exception as e:
        logger.error(f"Could not start Chrome: {e}")
        log_startup_error(e)
        return 1

    state.coordinator = InjectionCoordinator.from_settings(
        state.store, state.settings, state.storage,
        opener=launcher.make_opener(driver),
        cookie_source=launcher.make_cookie_source(driver),
    )
    logger.info(f"{len(state.store)} script(s) loaded, watching frames of {args.url}")
    launcher.run(state.coordinator, driver, discover_every=state.settings.poll_interval)
    return 0


def main():
    sys.exit(start())


if __name__ == "__main__":
    main()
