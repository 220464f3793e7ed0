# launcher.py
# Starts Chrome through Selenium, opens the host page and pumps the
# injection coordinator from a single thread.

import os
import sys
import time
import shutil
import zipfile
import threading
from pathlib import Path

import psutil
import requests
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.support.ui import WebDriverWait

from framemonkey import state
from framemonkey.constants import PROFILE_NAME
from framemonkey.error_reporter import logger, log_chrome_launch_error, show_pending_popups
from framemonkey.frames import find_frames
from framemonkey.retry_utils import retry_with_backoff
from framemonkey.utils import resource_path

PUMP_SLEEP = 0.05
MAX_FRAME_DEPTH = 3


def cleanup_chrome_processes():
    """
    Kill any stale Chrome/ChromeDriver processes that might be holding profile locks.
    This prevents "user data directory is already in use" errors.
    """
    try:
        killed_count = 0
        for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
            try:
                name = (proc.info['name'] or '').lower()
                if 'chrome' not in name and 'chromedriver' not in name:
                    continue
                cmdline = proc.info.get('cmdline') or []
                if any(PROFILE_NAME in str(arg) for arg in cmdline):
                    logger.info(f"[CLEANUP] Killing stale process: {proc.info['name']} (PID: {proc.info['pid']})")
                    proc.kill()
                    proc.wait(timeout=3)
                    killed_count += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.TimeoutExpired):
                pass

        if killed_count > 0:
            logger.info(f"[CLEANUP] Killed {killed_count} stale Chrome process(es)")
            # Give OS time to release file locks
            time.sleep(1)
        return killed_count
    except Exception as e:
        logger.warning(f"[CLEANUP] Error during cleanup: {e}")
        return 0


def remove_profile_lock_files(profile_path):
    """Remove Chrome lock files that might be left over from crashed processes."""
    for lock_file in ('Singleton Lock', 'SingletonLock', 'lockfile'):
        lock_path = os.path.join(profile_path, lock_file)
        if os.path.exists(lock_path):
            try:
                os.remove(lock_path)
                logger.info(f"[CLEANUP] Removed lock file: {lock_path}")
            except OSError as e:
                logger.warning(f"[CLEANUP] Could not remove {lock_path}: {e}")


def get_profile_path() -> str:
    """
    Chrome profile directory:
    - Frozen EXE: <same-folder-as-EXE>/profiles/FrameMonkeyProfile
    - Source run: profiles/FrameMonkeyProfile inside the package
    """
    if getattr(sys, "frozen", False):
        exe_dir = os.path.dirname(sys.executable)
        return os.path.join(exe_dir, "profiles", PROFILE_NAME)
    return resource_path(os.path.join("profiles", PROFILE_NAME))


def _clear_chromedriver_cache():
    """Clear webdriver_manager cache to force fresh download"""
    cache_dir = Path.home() / '.wdm'
    if cache_dir.exists():
        logger.warning(f"Clearing corrupted ChromeDriver cache: {cache_dir}")
        try:
            shutil.rmtree(cache_dir)
            logger.info("Cache cleared successfully")
        except OSError as e:
            logger.error(f"Failed to clear cache: {e}")


def _on_install_retry(attempt, exc):
    logger.warning(f"ChromeDriver installation attempt {attempt} failed: {exc}. Retrying...")
    if isinstance(exc, zipfile.BadZipFile):
        logger.error(f"Corrupted ChromeDriver download detected: {exc}")
        _clear_chromedriver_cache()


@retry_with_backoff(
    max_attempts=3,
    initial_delay=1.0,
    backoff_factor=2.0,
    max_delay=5.0,
    exceptions=(zipfile.BadZipFile, requests.exceptions.RequestException, OSError),
    on_retry=_on_install_retry
)
def install_chromedriver():
    """Download/install ChromeDriver, retrying and clearing the cache on corrupt downloads."""
    from webdriver_manager.chrome import ChromeDriverManager
    state.driver_path = ChromeDriverManager().install()
    logger.info(f"ChromeDriver ready: {state.driver_path}")
    return state.driver_path


def build_options(headless=False, profile_path=None):
    opts = webdriver.ChromeOptions()
    if profile_path:
        opts.add_argument(f"--user-data-dir={profile_path}")
    if headless:
        opts.add_argument("--headless=new")
    opts.add_argument("--log-level=3")
    opts.add_argument("--disable-gpu-process-crash-limit")
    opts.add_experimental_option("excludeSwitches", ["enable-automation"])
    opts.add_experimental_option("useAutomationExtension", False)
    # Disable password save prompts
    opts.add_experimental_option("prefs", {
        "credentials_enable_service": False,
        "profile.password_manager_enabled": False
    })
    return opts


def launch_browser(url, headless=False, max_attempts=2, retry_delay=2):
    """
    Start Chrome, open url and wait for the host page to finish loading.

    Returns:
        The WebDriver instance
    """
    profile_path = get_profile_path()
    os.makedirs(profile_path, exist_ok=True)
    cleanup_chrome_processes()

    for attempt in range(max_attempts):
        if attempt > 0:
            logger.info(f"[RETRY] Chrome launch attempt {attempt + 1}/{max_attempts}")
            cleanup_chrome_processes()
            remove_profile_lock_files(profile_path)
            time.sleep(retry_delay)

        try:
            service = Service(state.driver_path) if state.driver_path else Service()
            driver = webdriver.Chrome(service=service, options=build_options(headless, profile_path))
        except WebDriverException as e:
            if "user data directory is already in use" in str(e).lower() and attempt < max_attempts - 1:
                logger.warning("Profile directory locked, will retry after cleanup...")
                continue
            if "This version of ChromeDriver" in str(e):
                _clear_chromedriver_cache()
            log_chrome_launch_error(e)
            raise

        driver.get(url)
        WebDriverWait(driver, 15).until(
            lambda d: d.execute_script("return document.readyState") == "complete"
        )
        logger.info(f"[LAUNCH] Host page ready: {url}")
        state.driver = driver
        return driver

    raise RuntimeError("Chrome could not be started")


def close_browser(driver):
    try:
        if driver:
            logger.debug("Closing Chrome")
            driver.quit()
    except WebDriverException as e:
        logger.error(f"Failed to close Chrome: {e}")


def make_opener(driver):
    """GM_openInTab primitive: opens the URL in a new tab of the host browser."""
    def open_in_tab(url, options):
        driver.switch_to.default_content()
        driver.execute_script("window.open(arguments[0], '_blank');", url)
    return open_in_tab


def make_cookie_source(driver):
    """Cookies of the host browser, forwarded on withCredentials requests."""
    def cookies_for(url):
        try:
            driver.switch_to.default_content()
            return {c['name']: c['value'] for c in driver.get_cookies()}
        except WebDriverException as e:
            logger.debug(f"[XHR] Could not read cookies for {url}: {e}")
            return {}
    return cookies_for


def discover_frames(driver, coordinator, parent=None, depth=0):
    """Attach every frame not yet known to the coordinator, descending into child frames."""
    attached = 0
    for frame in find_frames(driver, parent):
        if not coordinator.is_attached(frame):
            if coordinator.attach(frame) is not None:
                attached += 1
        if depth + 1 < MAX_FRAME_DEPTH:
            attached += discover_frames(driver, coordinator, frame, depth + 1)
    return attached


def pump(coordinator, driver, stop_event, discover_every=1.0):
    """Single pump thread: owns every frame access for the life of the session."""
    last_discovery = 0.0
    while not stop_event.is_set():
        now = time.monotonic()
        if now - last_discovery >= discover_every:
            last_discovery = now
            try:
                count = discover_frames(driver, coordinator)
                if count:
                    logger.info(f"[LAUNCH] Attached {count} new frame(s)")
            except WebDriverException as e:
                logger.warning(f"[LAUNCH] Frame discovery failed: {e}")
        try:
            coordinator.tick()
        except WebDriverException as e:
            logger.error(f"[LAUNCH] Browser connection lost: {e}")
            stop_event.set()
            break
        time.sleep(PUMP_SLEEP)


def run(coordinator, driver, discover_every=1.0):
    """
    Pump the coordinator until Ctrl+C or until the browser goes away.
    """
    stop_event = state.stop_event
    stop_event.clear()
    pump_thread = threading.Thread(
        target=pump, args=(coordinator, driver, stop_event, discover_every),
        name="pump", daemon=True
    )
    pump_thread.start()
    try:
        while pump_thread.is_alive():
            pump_thread.join(0.5)
            show_pending_popups()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    finally:
        stop_event.set()
        pump_thread.join(5)
        coordinator.shutdown()
        close_browser(driver)
