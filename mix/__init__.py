"""
mix - package manager for MixOS

The package management engine: dependency resolution, the persistent
package store, the .mixpkg archive codec and the install/remove/upgrade
transaction engine.
"""

__version__ = "1.0.0"
