import numpy as np


def normalize(samples: np.ndarray) -> np.ndarray:
    """Scale so the global peak absolute value maps to 1.0. Silent buffers are returned as-is."""
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return data
    peak = float(np.max(np.abs(data)))
    if peak <= 0.0:
        return data
    return data / peak


def smooth(samples: np.ndarray, window: int = 5) -> np.ndarray:
    """Centered moving average.

    Only indices with a full window on both sides are smoothed; the
    ``window // 2`` samples at each edge are left at zero. Buffers shorter
    than the window are returned unmodified.
    """
    data = np.asarray(samples, dtype=np.float64)
    window = max(1, int(window))
    if len(data) < window:
        return data
    half = window // 2
    smoothed = np.zeros_like(data)
    kernel = np.ones(window) / window
    # 'valid' yields len - window + 1 values, centered on half..len-half-1
    smoothed[half:len(data) - half] = np.convolve(data, kernel, mode="valid")[:len(data) - 2 * half]
    return smoothed


def preprocess(samples: np.ndarray, window: int = 5) -> np.ndarray:
    """Normalize then smooth a mono buffer ahead of peak detection."""
    return smooth(normalize(samples), window)
