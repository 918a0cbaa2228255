import os
import numpy as np

from dagnet import LayerGraph, TrainingOptions, train_network
from dagnet import api


def make_bars(n_samples=400, size=8, random_state=42, noise=0.3):
    """Single-channel images holding a horizontal (class 0) or vertical (class 1) bar"""
    rng = np.random.RandomState(random_state)
    X = rng.randn(n_samples, 1, size, size) * noise
    y = np.arange(n_samples) % 2
    positions = rng.randint(1, size - 1, n_samples)
    for i in range(n_samples):
        if y[i] == 0:
            X[i, 0, positions[i], :] += 1.0
        else:
            X[i, 0, :, positions[i]] += 1.0
    return X, y


def residual_graph(size=8):
    graph = LayerGraph.from_layers([
        api.image_input_layer((1, size, size), name='input'),
        api.convolution2d_layer(3, 8, name='conv_1', padding='same'),
        api.relu_layer(name='relu_1'),
        api.convolution2d_layer(3, 8, name='conv_2', padding='same'),
        api.addition_layer(2, name='add'),
        api.relu_layer(name='relu_2'),
        api.max_pooling2d_layer(2, name='pool', stride=2),
        api.fully_connected_layer(2, name='fc'),
        api.softmax_layer(name='softmax'),
        api.classification_layer(name='output'),
    ])
    # Skip connection around conv_2
    graph.connect_layers('relu_1', 'add/in2')
    return graph


def main():
    np.random.seed(0)
    X, y = make_bars(n_samples=400)

    config_path = os.path.join(os.path.dirname(__file__), 'config.yaml')
    options = TrainingOptions.from_yaml(config_path)

    net, history = train_network(X, y, residual_graph(), options)

    X_test, y_test = make_bars(n_samples=100, random_state=7)
    scores = net.predict(X_test)
    preds = scores.argmax(axis=1)
    print(f"final mini-batch loss: {history['loss'][-1]:.4f}")
    print(f"test accuracy: {np.mean(preds == y_test) * 100:.2f}%")


if __name__ == '__main__':
    main()
