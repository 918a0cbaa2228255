"""
Training loop for DAG and series networks
Mini-batch SGD-style training, input normalization, finalization and checkpoints
"""
import copy
import math
import os
import time
from typing import Dict, Optional, Sequence, Union
import numpy as np

from .backend import Precision, gather, is_gpu_available
from .checkpoint import save_learnables
from .dispatch import ArrayDispatcher, DataDispatcher
from .errors import DataMismatchError
from .graph import LayerGraph
from .layers.base import Finalizable, Layer
from .layers.input import ImageInput
from .layers.output import CrossEntropy
from .network import assemble_network
from .options import TrainingOptions
from .regularizer import GradientThresholder, RegularizerL2
from .schedules import create_schedule
from .series import SeriesNetwork
from .solver import create_solver
from .trainable import wrap


def mini_batch_accuracy(predictions, targets) -> float:
    """Percentage of observations whose predicted class matches the target class"""
    Y, T = gather(predictions), gather(targets)
    return float(np.mean(np.argmax(Y, axis=1) == np.argmax(T, axis=1)) * 100)


def mini_batch_rmse(predictions, targets) -> float:
    Y, T = gather(predictions), gather(targets)
    return float(np.sqrt(np.sum((Y - T) ** 2) / Y.shape[0]))


def mini_batch_metrics(predictions, targets, is_classification: Sequence[bool]):
    """
    Accuracy averaged over classification heads and RMSE averaged over the
    other heads; either is None when the network has no head of that kind
    """
    accuracies, errors = [], []
    for Y, T, classify in zip(wrap(predictions), wrap(targets), is_classification):
        if classify:
            accuracies.append(mini_batch_accuracy(Y, T))
        else:
            errors.append(mini_batch_rmse(Y, T))
    accuracy = float(np.mean(accuracies)) if accuracies else None
    rmse = float(np.mean(errors)) if errors else None
    return accuracy, rmse


class ProgressReporter:
    """
    Prints the verbose training table

    A row is printed on the first iteration, every `frequency` iterations,
    and for the last iteration.
    """

    COLUMNS = ('Epoch', 'Iteration', 'Time Elapsed', 'Mini-batch Loss', 'Mini-batch Metric', 'Base Learn Rate')

    def __init__(self, frequency: int = 50, verbose: bool = True, metric_name: str = 'Accuracy'):
        self.frequency = frequency
        self.verbose = verbose
        self.metric_name = metric_name
        self._last_row = None
        self._last_printed = 0

    def _divider(self):
        print('|' + '|'.join('=' * 19 for _ in self.COLUMNS) + '|')

    def start(self):
        if not self.verbose:
            return
        header = list(self.COLUMNS)
        header[4] = f'Mini-batch {self.metric_name}'
        self._divider()
        print('|' + '|'.join(f'{h:^19}' for h in header) + '|')
        self._divider()

    def _print_row(self, row):
        epoch, iteration, elapsed, loss, metric, learn_rate = row
        hours, rest = divmod(int(elapsed), 3600)
        minutes, seconds = divmod(rest, 60)
        metric_text = 'n/a' if metric is None else f'{metric:.4f}'
        cells = [f'{epoch}', f'{iteration}', f'{hours:02d}:{minutes:02d}:{seconds:02d}',
                 f'{loss:.4f}', metric_text, f'{learn_rate:.4g}']
        print('|' + '|'.join(f'{c:^19}' for c in cells) + '|')
        self._last_printed = iteration

    def report_iteration(self, epoch, iteration, elapsed, loss, metric, learn_rate):
        self._last_row = (epoch, iteration, elapsed, loss, metric, learn_rate)
        if self.verbose and (iteration == 1 or iteration % self.frequency == 0):
            self._print_row(self._last_row)

    def finish(self):
        if not self.verbose:
            return
        if self._last_row is not None and self._last_row[1] != self._last_printed:
            self._print_row(self._last_row)
        self._divider()


class Trainer:
    """
    Trainer for networks exposing compute_gradients_for_training

    Args:
        options: TrainingOptions
    """

    def __init__(self, options: Optional[TrainingOptions] = None):
        self.options = options or TrainingOptions()
        self.schedule = create_schedule(self.options)
        self.precision = Precision(self.options.precision)
        self.execution_environment = self._resolve_environment(self.options.execution_environment)
        self.stop_training_flag = False
        self.history: Dict[str, list] = {
            'iteration': [],
            'epoch': [],
            'loss': [],
            'accuracy': [],
            'rmse': [],
            'learn_rate': [],
        }
        if self.options.verbose:
            device = 'GPU' if self.execution_environment == 'gpu' else 'CPU'
            print(f"Training on single {device}.")

    @staticmethod
    def _resolve_environment(environment: str) -> str:
        if environment == 'auto':
            return 'gpu' if is_gpu_available() else 'cpu'
        if environment == 'gpu' and not is_gpu_available():
            print("WARNING: GPU execution requested but no GPU is available. Training on the CPU.")
            return 'cpu'
        return environment

    def stop(self):
        """Stop after the current iteration"""
        self.stop_training_flag = True

    def initialize_network_normalizations(self, net, dispatcher: DataDispatcher):
        """Compute the average image of every zero-centering input layer that lacks one"""
        saved_end_of_epoch = dispatcher.end_of_epoch
        dispatcher.end_of_epoch = 'truncateLast'
        try:
            for position, i in enumerate(net.input_layer_indices):
                layer = net.layers[i]
                if isinstance(layer, ImageInput) and layer.needs_average_image:
                    if self.options.verbose:
                        print(f"Initializing input data normalization for '{layer.name}'.")
                    average = net.execution_strategy.compute_accum_image(dispatcher, input_index=position)
                    layer.average_image = net.execution_strategy.environment(self.precision.cast(average))
        finally:
            dispatcher.end_of_epoch = saved_end_of_epoch
        return net

    def _shuffle(self, dispatcher: DataDispatcher, epoch: int):
        shuffle = self.options.shuffle
        if shuffle == 'every-epoch' or (shuffle == 'once' and epoch == 1):
            dispatcher.shuffle()

    def _save_checkpoint(self, net, epoch: int):
        path = self.options.checkpoint_path
        os.makedirs(path, exist_ok=True)
        save_learnables(net, os.path.join(path, f'checkpoint_epoch_{epoch}.npz'),
                        verbose=self.options.verbose)

    def train(self, net, dispatcher: DataDispatcher):
        """
        Run the training loop

        Args:
            net: Network prepared for training
            dispatcher: Yields (X, Y, indices) mini-batches

        Returns:
            The trained network (updated in place)
        """
        opts = self.options
        params = net.learnable_parameters
        solver = create_solver(params, opts)
        regularizer = RegularizerL2(params, opts.l2_regularization)
        thresholder = GradientThresholder(opts.gradient_threshold_method, opts.gradient_threshold)
        strategy = net.execution_strategy

        is_classification = [isinstance(net.layers[k], CrossEntropy) for k in net.output_layer_indices]
        reports_accuracy = any(is_classification)
        reporter = ProgressReporter(opts.verbose_frequency, opts.verbose,
                                    'Accuracy' if reports_accuracy else 'RMSE')

        learn_rate = float(opts.initial_learn_rate)
        self.stop_training_flag = False
        iteration = 0
        start_time = time.time()
        reporter.start()

        for epoch in range(1, opts.max_epochs + 1):
            self._shuffle(dispatcher, epoch)
            dispatcher.start()
            while not dispatcher.is_done and not self.stop_training_flag:
                X, Y, _ = dispatcher.next()
                X = strategy.environment(X)
                Y = strategy.environment(Y)

                gradients, predictions, _ = net.compute_gradients_for_training(X, Y)
                loss = net.loss(predictions, Y)
                gradients = regularizer.regularize_gradients(gradients)
                gradients = thresholder.threshold_gradients(gradients)
                steps = solver.calculate_update(gradients, learn_rate)
                net.update_learnable_parameters(steps)
                iteration += 1

                accuracy, rmse = mini_batch_metrics(predictions, Y, is_classification)
                self.history['iteration'].append(iteration)
                self.history['epoch'].append(epoch)
                self.history['loss'].append(loss)
                self.history['accuracy'].append(accuracy)
                self.history['rmse'].append(rmse)
                self.history['learn_rate'].append(learn_rate)
                reporter.report_iteration(epoch, iteration, time.time() - start_time, loss,
                                          accuracy if reports_accuracy else rmse, learn_rate)

                if math.isnan(loss):
                    print("WARNING: Training loss is NaN. Stopping training.")
                    self.stop()

            learn_rate = self.schedule.update(learn_rate, epoch)
            if opts.checkpoint_path:
                self._save_checkpoint(net, epoch)
            if self.stop_training_flag:
                break

        reporter.finish()
        return net

    def finalize(self, net, dispatcher: DataDispatcher):
        """Recompute population statistics of Finalizable layers over one full epoch"""
        if not any(isinstance(layer, Finalizable) for layer in net.layers):
            return net
        saved_end_of_epoch = dispatcher.end_of_epoch
        dispatcher.end_of_epoch = 'truncateLast'
        try:
            net.reset_finalization()
            dispatcher.start()
            while not dispatcher.is_done:
                X, _, _ = dispatcher.next()
                net.finalize_network(net.execution_strategy.environment(X))
        finally:
            dispatcher.end_of_epoch = saved_end_of_epoch
        return net


def _build_network(layers_or_graph: Union[LayerGraph, Sequence[Layer]], precision: str):
    if isinstance(layers_or_graph, LayerGraph):
        return assemble_network(layers_or_graph, precision)
    net = SeriesNetwork(copy.deepcopy(list(layers_or_graph)))
    return net.initialize_learnable_parameters(precision)


def train_network(X, Y, layers_or_graph: Union[LayerGraph, Sequence[Layer]],
                  options: Optional[TrainingOptions] = None):
    """
    Train a network end to end

    Args:
        X: Input array (observations first), or list of arrays for several inputs
        Y: Class labels, responses, or a list of those for several outputs
        layers_or_graph: List of layers (series network) or LayerGraph (DAG network)
        options: TrainingOptions; defaults when omitted

    Returns:
        (trained network ready for prediction on the host, training history)
    """
    options = options or TrainingOptions()
    net = _build_network(layers_or_graph, options.precision)
    dispatcher = ArrayDispatcher(X, Y, options.mini_batch_size, options.end_of_epoch, options.precision)

    # Name the classes of classification outputs after the labels
    class_names = dispatcher.class_names
    for k in net.output_layer_indices:
        layer = net.layers[k]
        if isinstance(layer, CrossEntropy) and class_names and len(class_names) == layer.num_classes:
            layer.classes = [str(c) for c in class_names]

    targets = wrap(Y)
    if len(targets) != len(net.output_layer_indices):
        raise DataMismatchError(f"Network has {len(net.output_layer_indices)} output layers, got {len(targets)} targets")

    trainer = Trainer(options)
    net.prepare_network_for_training(trainer.execution_environment)
    trainer.initialize_network_normalizations(net, dispatcher)
    trainer.train(net, dispatcher)
    trainer.finalize(net, dispatcher)
    net.setup_network_for_host_prediction()
    return net, trainer.history
