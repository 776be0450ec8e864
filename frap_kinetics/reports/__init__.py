"""Report generation layer."""

from .figures import plot_recovery_curves, save_figure

__all__ = ["plot_recovery_curves", "save_figure"]
