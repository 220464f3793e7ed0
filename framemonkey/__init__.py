"""FrameMonkey: a userscript manager for the frames of a Selenium-driven page."""

from framemonkey.constants import VERSION as __version__
