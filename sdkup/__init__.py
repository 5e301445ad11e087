"""
sdkup - SDK package updater

Reconciles an installed SDK against a remote repository index:
- Update report with version-free package names
- Dependency closure for the selected updates
- Cancellable, progress-reporting install pipeline
"""

__version__ = "0.3.0"
__author__ = "sdkup contributors"
