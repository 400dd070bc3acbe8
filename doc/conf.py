"""Sphinx configuration file for an LSST stack package.

This configuration only affects single-package Sphinx documenation builds.
"""

from documenteer.conf.pipelinespkg import *  # noqa: F403, import *

project = "davclient"
html_theme_options["logotext"] = project  # noqa: F405, unknown name
html_title = project
html_short_title = project
doxylink = {}
exclude_patterns = ["changes/*"]

intersphinx_mapping["urllib3"] = ("https://urllib3.readthedocs.io/en/stable/", None)  # noqa: F405

nitpick_ignore_regex = [
    ("py:(class|obj)", ".*_T$"),
    ("py:(class|obj)", "re.Pattern"),
    ("py:(class|obj)", "xml.etree.ElementTree.Element"),
]
