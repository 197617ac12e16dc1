"""
Weight Normalization Demo — decomposition, gradient checks, training comparison, and PDF report.

Generates:
- viz/*.png — Individual visualization files
- report.pdf — Comprehensive PDF report
"""

import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.backends.backend_pdf import PdfPages
from sklearn.datasets import make_regression
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import StandardScaler

sys.path.insert(0, str(Path(__file__).parent / "src"))

from weightnorm import ActivationLayer, Convolution, LayerStore, Linear, WeightNorm, gradient_check
from weightnorm.log import configure_logging, get_logger

SEED = 42
np.random.seed(SEED)

VIZ_DIR = Path(__file__).parent / "viz"
VIZ_DIR.mkdir(exist_ok=True)
REPORT_PATH = Path(__file__).parent / "report.pdf"

COLORS = {
    "blue": "#3498db",
    "red": "#e74c3c",
    "green": "#27ae60",
    "orange": "#f39c12",
    "purple": "#9b59b6",
}

logger = get_logger("demo")
all_figures = []


def save_fig(fig, name, title=None):
    fig.savefig(VIZ_DIR / name, dpi=150, bbox_inches="tight")
    all_figures.append({"fig_path": VIZ_DIR / name, "title": title or name})
    plt.close(fig)


# ─────────────────────────────────────────────────────────────
# Example 1: magnitude / direction decomposition
# ─────────────────────────────────────────────────────────────


def example_1_decomposition():
    print("=" * 60)
    print("Example 1: Decomposing a Linear layer into g and v")
    print("=" * 60)

    wn = WeightNorm(Linear(16, 8))
    wn.reset()
    W = wn.wrapped.W.copy()
    unit_v = wn.v / np.linalg.norm(wn.v, axis=1, keepdims=True)

    fig, axes = plt.subplots(1, 3, figsize=(15, 4.5))

    axes[0].imshow(W, cmap="RdBu_r", aspect="auto")
    axes[0].set_title("Wrapped weights W (8 x 16)")
    axes[0].set_xlabel("Input feature")
    axes[0].set_ylabel("Output unit")

    axes[1].bar(np.arange(8), wn.g, color=COLORS["blue"], alpha=0.8)
    axes[1].set_title("Magnitudes g = ||W_i||")
    axes[1].set_xlabel("Output unit")
    axes[1].grid(True, alpha=0.3, axis="y")

    axes[2].imshow(unit_v, cmap="RdBu_r", aspect="auto")
    axes[2].set_title("Directions v_i / ||v_i|| (unit rows)")
    axes[2].set_xlabel("Input feature")

    fig.suptitle("W = g * v / ||v||", fontsize=13, fontweight="bold")
    fig.tight_layout()
    save_fig(fig, "01_decomposition.png", "Magnitude / Direction Decomposition")

    rebuilt = wn.effective_weights()[:W.size].reshape(W.shape)
    print(f"  max |W - g v/||v|||: {np.max(np.abs(W - rebuilt)):.2e}")
    print(f"  g range: [{wn.g.min():.4f}, {wn.g.max():.4f}]")
    print()


# ─────────────────────────────────────────────────────────────
# Example 2: finite-difference gradient checks
# ─────────────────────────────────────────────────────────────


def example_2_gradient_checks():
    print("=" * 60)
    print("Example 2: Analytical vs Numerical Gradients")
    print("=" * 60)

    cases = {
        "Linear": (Linear(6, 4), np.random.randn(3, 6)),
        "Convolution": (Convolution(2, 3, kernel_size=2, padding=1), np.random.randn(2, 2, 3, 3)),
        "WN(Linear)": (WeightNorm(Linear(6, 4)), np.random.randn(3, 6)),
        "WN(Convolution)": (WeightNorm(Convolution(2, 3, kernel_size=2)), np.random.randn(2, 2, 4, 4)),
        "InverseQuadratic": (ActivationLayer("inverse_quadratic"), np.random.randn(3, 6)),
    }

    names, dx_errors, dw_errors = [], [], []
    for name, (layer, x) in cases.items():
        layer.reset()
        result = gradient_check(layer, x)
        names.append(name)
        dx_errors.append(result["dx"])
        dw_errors.append(result.get("dweights", np.nan))
        status = "PASS" if result["passed"] else "FAIL"
        print(f"  {name:<18} dx={result['dx']:.2e}  dweights={result.get('dweights', float('nan')):.2e}  {status}")

    fig, ax = plt.subplots(figsize=(10, 4.5))
    idx = np.arange(len(names))
    ax.bar(idx - 0.2, dx_errors, width=0.4, color=COLORS["blue"], label="dL/dx")
    ax.bar(idx + 0.2, dw_errors, width=0.4, color=COLORS["orange"], label="dL/dweights")
    ax.axhline(1e-5, color=COLORS["red"], linestyle="--", label="tolerance")
    ax.set_yscale("log")
    ax.set_xticks(idx)
    ax.set_xticklabels(names)
    ax.set_ylabel("Relative error")
    ax.set_title("Finite-Difference Gradient Checks")
    ax.legend(fontsize=8)
    ax.grid(True, alpha=0.3, axis="y")
    fig.tight_layout()
    save_fig(fig, "02_gradient_checks.png", "Gradient Checks")
    print()


# ─────────────────────────────────────────────────────────────
# Example 3: plain vs weight-normalized regression network
# ─────────────────────────────────────────────────────────────


def build_network(normalized):
    store = LayerStore()
    if normalized:
        store.add(WeightNorm(Linear(8, 32, init_method="xavier")))
        store.add(ActivationLayer("tanh"))
        store.add(WeightNorm(Linear(32, 1, init_method="xavier")))
    else:
        store.add(Linear(8, 32, init_method="xavier"))
        store.add(ActivationLayer("tanh"))
        store.add(Linear(32, 1, init_method="xavier"))
    store.reset()
    return store


def train_step(store, X, y, learning_rate):
    inputs = []
    a = X
    for layer in store:
        inputs.append(a)
        a = layer.forward(a)

    n = X.shape[0]
    loss = float(0.5 * np.sum((a - y) ** 2) / n)
    gy = (a - y) / n

    grads = []
    for layer, x_in in zip(reversed(list(store)), reversed(inputs)):
        grads.append(layer.gradient(x_in, gy))
        gy = layer.backward(x_in, gy)

    for layer, grad in zip(reversed(list(store)), grads):
        if grad.size:
            layer.weights -= learning_rate * grad
    return loss


def evaluate(store, X, y):
    a = X
    for layer in store:
        a = layer.forward(a)
    return float(0.5 * np.mean((a - y) ** 2))


def example_3_training():
    print("=" * 60)
    print("Example 3: Plain vs Weight-Normalized Network (SGD)")
    print("=" * 60)

    X, y = make_regression(n_samples=600, n_features=8, noise=5.0, random_state=SEED)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.25, random_state=SEED)
    x_scaler = StandardScaler().fit(X_train)
    y_scaler = StandardScaler().fit(y_train.reshape(-1, 1))
    X_train, X_test = x_scaler.transform(X_train), x_scaler.transform(X_test)
    y_train = y_scaler.transform(y_train.reshape(-1, 1))
    y_test = y_scaler.transform(y_test.reshape(-1, 1))

    epochs, batch_size, learning_rate = 60, 32, 0.05
    histories = {}
    for normalized in (False, True):
        np.random.seed(SEED)
        store = build_network(normalized)
        label = "weight norm" if normalized else "plain"
        history = []
        for epoch in range(epochs):
            order = np.random.permutation(X_train.shape[0])
            losses = []
            for start in range(0, len(order), batch_size):
                batch = order[start:start + batch_size]
                losses.append(train_step(store, X_train[batch], y_train[batch], learning_rate))
            history.append(float(np.mean(losses)))
            logger.debug("epoch", extra={"model": label, "epoch": epoch, "loss": history[-1]})
        histories[label] = history
        print(f"  {label:<12} final train loss={history[-1]:.4f}  test loss={evaluate(store, X_test, y_test):.4f}")

    fig, ax = plt.subplots(figsize=(9, 4.5))
    ax.plot(histories["plain"], color=COLORS["blue"], label="plain Linear")
    ax.plot(histories["weight norm"], color=COLORS["green"], label="WeightNorm(Linear)")
    ax.set_yscale("log")
    ax.set_xlabel("Epoch")
    ax.set_ylabel("Train MSE / 2")
    ax.set_title(f"SGD, lr={learning_rate}, batch={batch_size}")
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    save_fig(fig, "03_training.png", "Plain vs Weight-Normalized Training")
    print()


# ─────────────────────────────────────────────────────────────
# Example 4: per-filter magnitudes of a wrapped convolution
# ─────────────────────────────────────────────────────────────


def example_4_convolution_filters():
    print("=" * 60)
    print("Example 4: Wrapped Convolution, One g per Filter")
    print("=" * 60)

    wn = WeightNorm(Convolution(1, 6, kernel_size=3, padding=1))
    wn.reset()
    wn.g[...] = np.linspace(0.25, 1.5, 6)
    x = np.random.randn(1, 1, 12, 12)
    y = wn.forward(x)

    fig, axes = plt.subplots(2, 6, figsize=(15, 5))
    for o in range(6):
        axes[0, o].imshow(wn.wrapped.W[o, 0], cmap="RdBu_r")
        axes[0, o].set_title(f"g={wn.g[o]:.2f}", fontsize=9)
        axes[0, o].axis("off")
        axes[1, o].imshow(y[0, o], cmap="viridis")
        axes[1, o].set_title(f"std={y[0, o].std():.2f}", fontsize=9)
        axes[1, o].axis("off")
    fig.suptitle("Filters (top) and feature maps (bottom): output scale follows g", fontsize=12, fontweight="bold")
    fig.tight_layout()
    save_fig(fig, "04_conv_filters.png", "Wrapped Convolution Filters")

    for o in range(6):
        print(f"  filter {o}: g={wn.g[o]:.3f}  ||W_o||={np.linalg.norm(wn.wrapped.W[o]):.3f}")
    print()


def generate_pdf_report():
    print("Generating PDF report...")
    with PdfPages(REPORT_PATH) as pdf:
        fig = plt.figure(figsize=(11, 8.5))
        fig.text(0.5, 0.6, "Weight Normalization", ha="center", fontsize=26, fontweight="bold")
        fig.text(0.5, 0.5, "w = g * v / ||v||, one g per output unit", ha="center", fontsize=14)
        fig.text(0.5, 0.42, f"{len(all_figures)} figures, seed={SEED}", ha="center", fontsize=11, color="gray")
        pdf.savefig(fig)
        plt.close(fig)

        for entry in all_figures:
            img = plt.imread(entry["fig_path"])
            fig, ax = plt.subplots(figsize=(11, 8.5))
            ax.imshow(img)
            ax.axis("off")
            ax.set_title(entry["title"], fontsize=14, fontweight="bold")
            pdf.savefig(fig)
            plt.close(fig)
    print(f"  Saved {REPORT_PATH}")


def main():
    configure_logging("INFO")
    example_1_decomposition()
    example_2_gradient_checks()
    example_3_training()
    example_4_convolution_filters()
    generate_pdf_report()


if __name__ == "__main__":
    main()
