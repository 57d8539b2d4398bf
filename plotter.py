# plotter.py
from __future__ import annotations

import datetime as dt
from typing import List, Optional, Tuple

import matplotlib
import numpy as np

matplotlib.use("Agg")
import matplotlib.pyplot as plt


def plot_water_level(
    device_label: str,
    rows: List[Tuple[dt.datetime, float]],
    out_path: str,
    critical_level_cm: Optional[float] = None,
) -> Optional[str]:
    """
    Water level history with the flood critical level.
    Returns None when there is nothing to draw.
    """
    if not rows:
        return None

    times = [t for t, _ in rows]
    levels = np.asarray([v for _, v in rows], dtype=float)

    fig, ax = plt.subplots(figsize=(8, 4))
    ax.plot(times, levels, marker="o", markersize=3, linewidth=1)
    if critical_level_cm is not None:
        ax.axhline(critical_level_cm, color="red", linestyle="--", linewidth=1)
        above = levels >= critical_level_cm
        if above.any():
            ax.scatter(
                [t for t, hit in zip(times, above) if hit],
                levels[above],
                color="red",
                s=20,
            )

    # highlight last
    ax.scatter([times[-1]], [levels[-1]], s=80)

    ax.set_title(device_label)
    ax.set_xlabel("Time (UTC)")
    ax.set_ylabel("Water level (cm)")
    ax.set_ylim(bottom=0)
    fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(out_path, dpi=120)
    plt.close(fig)
    return out_path
