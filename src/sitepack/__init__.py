"""Sitepack - archive and restore a site's code, files and database"""

__version__ = "1.0.0"
