"""
===============================================================================
ATTITUDE EKF - Estimation History Plots
===============================================================================
Post-run plots of a telemetry DataFrame produced by AttitudeSimulation:

  1. Attitude error angle between R_bn and R_bn_hat
  2. Gyro bias truth vs. estimate, per axis
  3. Accelerometer bias truth vs. estimate, per axis
  4. Attitude 1-sigma bounds from the diagonal of P_hat

Uses the non-interactive Agg backend so plots can be written from the CLI
and from tests without a display.
===============================================================================
"""

from pathlib import Path
from typing import Union

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from attitude_ekf.core.constants import RAD2DEG  # noqa: E402

plt.rcParams.update({
    'font.size': 10,
    'axes.labelsize': 11,
    'axes.titlesize': 12,
    'legend.fontsize': 9,
    'figure.dpi': 100,
    'savefig.dpi': 150,
    'lines.linewidth': 1.2,
    'axes.grid': True,
    'grid.alpha': 0.3,
})

AXIS_COLORS = ('#e74c3c', '#27ae60', '#3498db')
AXIS_LABELS = ('x', 'y', 'z')


def _plot_bias(ax, df: pd.DataFrame, truth: str, estimate: str, title: str,
               unit: str) -> None:
    t = df['t']
    for i, (color, label) in enumerate(zip(AXIS_COLORS, AXIS_LABELS)):
        ax.plot(t, df[f'{truth}_{i}'], '--', color=color, label=f'{label} true')
        ax.plot(t, df[f'{estimate}_{i}'], color=color, label=f'{label} est')
    ax.set_xlabel('Time (s)')
    ax.set_ylabel(f'Bias ({unit})')
    ax.set_title(title, fontweight='bold')
    ax.legend(loc='upper right', ncol=3)


def plot_estimation_history(df: pd.DataFrame, output_path: Union[str, Path]) -> Path:
    """
    Render the estimation history of one run and save it as a PNG.

    Args:
        df: Telemetry frame with columns t, R_bn_*, R_bn_hat_*, b_g_*,
            b_g_hat_*, b_a_*, b_a_hat_* and P_hat_*.
        output_path: Destination PNG file. Parent directories are created.

    Returns:
        The path written.
    """
    if df.empty:
        raise ValueError("Cannot plot an empty telemetry frame")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    t = df['t']

    fig, axes = plt.subplots(2, 2, figsize=(14, 10))
    ax1, ax2, ax3, ax4 = axes.flat

    # Attitude error angle
    if 'attitude_error' in df:
        error_deg = df['attitude_error'] * RAD2DEG
    else:
        R = df[[f'R_bn_{i}_{j}' for i in range(3) for j in range(3)]].to_numpy()
        R_hat = df[[f'R_bn_hat_{i}_{j}' for i in range(3) for j in range(3)]].to_numpy()
        # trace(R^T R_hat) from the row-major flattening
        trace = np.sum(R * R_hat, axis=1)
        error_deg = np.arccos(np.clip(0.5 * (trace - 1.0), -1.0, 1.0)) * RAD2DEG
    ax1.semilogy(t, np.maximum(error_deg, 1e-12), color='#2c3e50')
    ax1.set_xlabel('Time (s)')
    ax1.set_ylabel('Error (deg)')
    ax1.set_title('Attitude Estimation Error', fontweight='bold')

    _plot_bias(ax2, df, 'b_g', 'b_g_hat', 'Gyro Bias', 'rad/s')
    _plot_bias(ax3, df, 'b_a', 'b_a_hat', 'Accelerometer Bias', 'm/s$^2$')

    # Attitude 1-sigma
    for i, (color, label) in enumerate(zip(AXIS_COLORS, AXIS_LABELS)):
        sigma = np.sqrt(np.maximum(df[f'P_hat_{i}_{i}'], 0.0)) * RAD2DEG
        ax4.semilogy(t, np.maximum(sigma, 1e-12), color=color, label=label)
    ax4.set_xlabel('Time (s)')
    ax4.set_ylabel('1-sigma (deg)')
    ax4.set_title('Attitude Uncertainty', fontweight='bold')
    ax4.legend(loc='upper right')

    fig.suptitle('Attitude EKF Estimation History', fontsize=14, fontweight='bold')
    plt.tight_layout()
    plt.savefig(output_path, bbox_inches='tight', facecolor='white')
    plt.close(fig)
    return output_path
