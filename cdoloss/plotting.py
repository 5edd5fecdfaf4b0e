import numpy as np
import seaborn as sns
from matplotlib import pyplot as plt

from .correlation import FactorLoadings
from .lossgrid import LossDistributionGrid
from .tranche import Tranche


# ===================== LOSS DISTRIBUTIONS ===================== #
def plot_loss_surface(grid: LossDistributionGrid, title=None, show=False):
    """Heatmap of a distribution grid, dates down and levels across."""
    frame = grid.to_frame()
    frame.index = frame.index.strftime("%Y-%m-%d")
    frame.columns = [f"{level:.2f}" for level in frame.columns]
    fig, ax = plt.subplots(figsize=(12, 6))
    label = "P(L <= level)" if grid.kind == LossDistributionGrid.PROBABILITY else "E[min(L, level)]"
    sns.heatmap(frame, cmap="Blues", ax=ax, cbar_kws={"label": label})
    ax.set_title(title or f"Loss distribution ({grid.kind})")
    ax.set_xlabel("Loss level")
    ax.set_ylabel("Date")
    plt.tight_layout()
    if show:
        plt.show()
    return fig


def plot_tranche_losses(models, tranches, date=None, show=False):
    """Expected tranche loss (as a fraction of the tranche) per model.

    ``models`` maps a label to a basket model.
    """
    fig, ax = plt.subplots(figsize=(10, 4))
    labels = [f"{t.attachment:.0%}-{t.detachment:.0%}" for t in tranches]
    width = 0.8 / max(len(models), 1)
    x = np.arange(len(tranches))
    for k, (label, model) in enumerate(models.items()):
        when = model.basket.dates[-1] if date is None else date
        values = [model.accumulated_loss(when, t.attachment, t.detachment) / t.width if t.width > 0 else 0.0
                  for t in tranches]
        ax.bar(x + k * width, values, width, label=label)
    ax.set_xticks(x + 0.4 - width / 2)
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_ylabel("Expected tranche loss")
    ax.set_title("Expected Loss by Tranche")
    ax.legend(loc="upper right")
    plt.tight_layout()
    if show:
        plt.show()
    return fig


# ===================== CORRELATION FIT ===================== #
def plot_correlation_fit(matrix, loadings: FactorLoadings, show=False):
    """Target, implied and difference correlation heatmaps side by side."""
    target = np.asarray(matrix, dtype=float)
    implied = loadings.correlation()
    n = target.shape[0]
    fig, axs = plt.subplots(1, 3, figsize=(3 * (n * 0.3 + 4), n * 0.3 + 4))
    annot = n <= 12
    annot_kws = {"size": max(6, int(200 / (n * n)))}
    panels = [(target, "Target Correlation", "Blues"),
              (implied, f"Implied ({loadings.n_factors} factors)", "Reds"),
              (implied - target, "Implied - Target", "coolwarm")]
    for ax, (values, title, cmap) in zip(axs, panels):
        sns.heatmap(values, annot=annot, fmt=".2f", cmap=cmap, square=True, ax=ax, annot_kws=annot_kws)
        ax.set_title(title)
    fig.suptitle(f"Sum-square error {float(((implied - target) ** 2).sum()):.3e}")
    plt.tight_layout()
    if show:
        plt.show()
    return fig


def tranche_grid(points):
    """Adjacent tranches from a list of attachment points."""
    return [Tranche(a, d) for a, d in zip(points[:-1], points[1:])]
