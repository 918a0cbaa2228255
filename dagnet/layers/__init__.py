from .base import Layer, LearnableParameter, InputLayer, OutputLayer, Finalizable
from .input import ImageInput, SequenceInput
from .conv import Convolution2D, FullyConnected, conv2d
from .pooling import MaxPooling2D, MaxUnpooling2D, AveragePooling2D
from .activations import ReLU, LeakyReLU, ClippedReLU, Softmax
from .normalization import BatchNormalization, CrossChannelNormalization, Dropout
from .combine import Addition, Concatenation, DepthSlice
from .recurrent import LSTM, BiLSTM
from .output import CrossEntropy, MeanSquaredError
from .custom import CustomLayer
from .padding import calculate_same_padding

__all__ = [
    'Layer', 'LearnableParameter', 'InputLayer', 'OutputLayer', 'Finalizable',
    'ImageInput', 'SequenceInput',
    'Convolution2D', 'FullyConnected', 'conv2d',
    'MaxPooling2D', 'MaxUnpooling2D', 'AveragePooling2D',
    'ReLU', 'LeakyReLU', 'ClippedReLU', 'Softmax',
    'BatchNormalization', 'CrossChannelNormalization', 'Dropout',
    'Addition', 'Concatenation', 'DepthSlice',
    'LSTM', 'BiLSTM',
    'CrossEntropy', 'MeanSquaredError',
    'CustomLayer',
    'calculate_same_padding',
]
