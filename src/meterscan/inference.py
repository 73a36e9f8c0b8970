"""ONNX Runtime text recognition for the neural backend.

Wraps a PaddleOCR-style recognition model (CNN + CTC head) with a character
dictionary. The session is loaded once and shared read-only by every worker
thread; ``predict()`` keeps no state between calls.

Classes:
    TextRecognitionPredictor - PP-OCR recognition model via ONNX Runtime

Usage:
    from meterscan.inference import TextRecognitionPredictor

    predictor = TextRecognitionPredictor.from_model_dir("models")
    text, conf = predictor.predict(crop_rgb)
"""

import logging
import math
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

log = logging.getLogger(__name__)

REC_MODEL_FILE = "pp-ocrv5_mobile_rec.onnx"
DICT_FILE = "ppocrv5_dict.txt"


def find_model_dir(candidates: Iterable[Path]) -> Optional[Path]:
    """Return the first directory holding both the model and its dictionary."""
    for directory in candidates:
        directory = Path(directory)
        if (directory / REC_MODEL_FILE).exists() and (directory / DICT_FILE).exists():
            return directory
    return None


def load_dictionary(dict_path: str) -> List[str]:
    """Character list indexed by CTC class; index 0 is the blank."""
    with open(dict_path, "r", encoding="utf-8") as f:
        chars = [line.rstrip("\r\n") for line in f]
    return ["<blank>"] + chars + [" "]


class TextRecognitionPredictor:
    """PP-OCR text recognition model run through ONNX Runtime.

    Args:
        model_path: Path to the recognition ``.onnx`` model.
        dict_path: Path to the character dictionary (one character per line).
        providers: ONNX Runtime execution providers, in preference order.
    """

    INPUT_H = 48
    MIN_W = 16

    def __init__(
        self,
        model_path: str,
        dict_path: str,
        providers: Optional[Sequence[str]] = None,
    ):
        import onnxruntime as ort

        if providers is None:
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        available = set(ort.get_available_providers())
        providers = [p for p in providers if p in available] or ["CPUExecutionProvider"]

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        log.info("Loading recognition model %s", model_path)
        self.session = ort.InferenceSession(
            model_path, sess_options=sess_options, providers=providers
        )
        self.input_name = self.session.get_inputs()[0].name
        log.info("Active providers: %s", self.session.get_providers())

        self.charset = load_dictionary(dict_path)

    @classmethod
    def from_model_dir(cls, model_dir: str, **kwargs) -> "TextRecognitionPredictor":
        directory = Path(model_dir)
        return cls(str(directory / REC_MODEL_FILE), str(directory / DICT_FILE), **kwargs)

    def _preprocess(self, image_rgb: np.ndarray) -> np.ndarray:
        """Resize to the model height keeping aspect ratio.

        Returns a (1, 3, 48, W) float32 array normalized to [-1, 1].
        """
        h, w = image_rgb.shape[:2]
        target_w = max(self.MIN_W, int(math.ceil(self.INPUT_H * w / max(h, 1))))
        resized = cv2.resize(image_rgb, (target_w, self.INPUT_H), interpolation=cv2.INTER_LINEAR)
        tensor = resized.astype(np.float32).transpose(2, 0, 1) / 255.0
        tensor = (tensor - 0.5) / 0.5
        return tensor[np.newaxis]

    def _ctc_decode(self, logits: np.ndarray) -> Tuple[str, float]:
        """Greedy CTC decode of one (T, num_classes) sequence.

        The exported head usually emits probabilities already; raw logits
        are softmaxed first.
        """
        probs = logits
        if not np.allclose(probs.sum(axis=-1), 1.0, atol=1e-3):
            exp_logits = np.exp(logits - logits.max(axis=-1, keepdims=True))
            probs = exp_logits / exp_logits.sum(axis=-1, keepdims=True)

        indices = probs.argmax(axis=-1)
        max_probs = probs.max(axis=-1)

        result = []
        conf_values = []
        prev_idx = -1
        for t, idx in enumerate(indices):
            if idx != 0 and idx != prev_idx and idx < len(self.charset):
                result.append(self.charset[idx])
                conf_values.append(max_probs[t])
            prev_idx = idx

        text = "".join(result)
        confidence = float(np.mean(conf_values)) if conf_values else 0.0
        return text, confidence

    def predict(self, image_rgb: np.ndarray) -> Tuple[str, float]:
        """Recognize the text in an RGB image.

        Returns:
            (text, confidence) tuple, confidence in [0, 1].
        """
        tensor = self._preprocess(image_rgb)
        output = self.session.run(None, {self.input_name: tensor})[0]
        return self._ctc_decode(output[0])
