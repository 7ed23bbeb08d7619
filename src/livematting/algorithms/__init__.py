from .base import InferenceOutput, RecurrentMattingModel
from .onnx_base import ONNXRecurrentModel, RVMMobileNetV3ONNX, RVMResNet50ONNX
from .torchscript import RVMMobileNetV3, RVMResNet50

__all__ = [
    "InferenceOutput",
    "RecurrentMattingModel",
    "ONNXRecurrentModel",
    "RVMMobileNetV3",
    "RVMResNet50",
    "RVMMobileNetV3ONNX",
    "RVMResNet50ONNX",
]
