#settings.py
import os
import configparser

from framemonkey.constants import CONFIG_FILE, SECTION, DEFAULTS
from framemonkey.utils import get_path


class Settings:
    """Typed view over the [Settings] section of settings.ini."""

    def __init__(self, section, path=None):
        self.section = section
        self.path = path

    def __getitem__(self, key):
        return self.section[key]

    def __contains__(self, key):
        return key in self.section

    def get(self, key, fallback=None):
        return self.section.get(key, fallback)

    def get_float(self, key):
        try:
            return self.section.getfloat(key)
        except ValueError:
            return float(DEFAULTS[key])

    def get_int(self, key):
        try:
            return self.section.getint(key)
        except ValueError:
            return int(DEFAULTS[key])

    def get_bool(self, key):
        try:
            return self.section.getboolean(key)
        except ValueError:
            return DEFAULTS[key].lower() == 'true'

    @property
    def poll_interval(self):
        return self.get_float('poll_interval')

    @property
    def force_check_every(self):
        return self.get_int('force_check_every')

    @property
    def idle_delay(self):
        return self.get_float('idle_delay')

    @property
    def refresh_delay(self):
        return self.get_float('refresh_delay')

    @property
    def max_retries(self):
        return self.get_int('max_retries')

    @property
    def request_timeout(self):
        return self.get_float('request_timeout')

    @property
    def enforce_connect(self):
        return self.get_bool('enforce_connect')

    @property
    def headless(self):
        return self.get_bool('headless')


def default_settings():
    """Settings populated from DEFAULTS only, nothing read from disk."""
    parser = configparser.ConfigParser()
    parser.add_section(SECTION)
    for key, val in DEFAULTS.items():
        parser[SECTION][key] = val
    return Settings(parser[SECTION])


def load_settings(path=None):
    settings_path = path or get_path(CONFIG_FILE)
    config = configparser.ConfigParser()
    # read existing config; missing file is okay
    if os.path.exists(settings_path):
        config.read(settings_path)
    # ensure the section exists
    if not config.has_section(SECTION):
        config.add_section(SECTION)
    section = config[SECTION]
    # populate defaults for missing keys
    for key, val in DEFAULTS.items():
        if key not in section:
            section[key] = val
    return Settings(section, settings_path)


def save_settings(values, path=None):
    settings_path = path or get_path(CONFIG_FILE)

    # Load existing settings.ini
    parser = configparser.ConfigParser()
    if os.path.exists(settings_path):
        parser.read(settings_path)

    if not parser.has_section(SECTION):
        parser.add_section(SECTION)

    # Only update the keys that were passed in
    for key, val in values.items():
        parser[SECTION][key] = str(val)

    with open(settings_path, 'w') as configfile:
        parser.write(configfile)
