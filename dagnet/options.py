"""
Training options: defaults, validation and YAML loading
"""
import math
from typing import Dict
import yaml

DEFAULT_OPTIONS = {
    # Solver
    'solver': 'sgdm',             # 'sgdm', 'adam', 'rmsprop'
    'momentum': 0.9,
    'gradient_decay_factor': 0.9,
    'squared_gradient_decay_factor': None,  # 0.999 for adam, 0.9 for rmsprop
    'epsilon': 1e-8,
    'initial_learn_rate': 0.01,
    'l2_regularization': 1e-4,

    # Learn rate schedule
    'learn_rate_schedule': 'none',  # 'none', 'piecewise'
    'learn_rate_drop_factor': 0.1,
    'learn_rate_drop_period': 10,

    # Gradient thresholding
    'gradient_threshold': math.inf,
    'gradient_threshold_method': 'l2norm',

    # Loop
    'max_epochs': 30,
    'mini_batch_size': 128,
    'shuffle': 'once',            # 'once', 'never', 'every-epoch'
    'end_of_epoch': 'truncateLast',

    # Reporting
    'verbose': True,
    'verbose_frequency': 50,

    # Hardware and storage
    'execution_environment': 'auto',  # 'auto', 'cpu', 'gpu'
    'precision': 'single',
    'checkpoint_path': None,
}

_CHOICES = {
    'solver': ('sgdm', 'adam', 'rmsprop'),
    'learn_rate_schedule': ('none', 'piecewise'),
    'gradient_threshold_method': ('l2norm', 'global-l2norm', 'absolute-value'),
    'shuffle': ('once', 'never', 'every-epoch'),
    'end_of_epoch': ('truncateLast', 'discardLast'),
    'execution_environment': ('auto', 'cpu', 'gpu'),
    'precision': ('single', 'double'),
}


def _positive_int(name, value):
    if isinstance(value, bool) or int(value) != value or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return int(value)


class TrainingOptions:
    """
    Options for Trainer and train_network

    Every key of DEFAULT_OPTIONS can be passed as a keyword argument.
    Values are validated on construction and a ValueError names the bad option.
    """

    def __init__(self, **kwargs):
        unknown = sorted(set(kwargs) - set(DEFAULT_OPTIONS))
        if unknown:
            raise ValueError(f"Unknown training options: {unknown}")
        config = {**DEFAULT_OPTIONS, **kwargs}
        self._validate(config)
        if config['squared_gradient_decay_factor'] is None:
            config['squared_gradient_decay_factor'] = 0.999 if config['solver'] == 'adam' else 0.9
        for key, value in config.items():
            setattr(self, key, value)

    @staticmethod
    def _validate(config: Dict):
        for key, choices in _CHOICES.items():
            if config[key] not in choices:
                raise ValueError(f"{key} must be one of {choices}, got {config[key]!r}")

        config['max_epochs'] = _positive_int('max_epochs', config['max_epochs'])
        config['mini_batch_size'] = _positive_int('mini_batch_size', config['mini_batch_size'])
        config['verbose_frequency'] = _positive_int('verbose_frequency', config['verbose_frequency'])
        config['learn_rate_drop_period'] = _positive_int('learn_rate_drop_period', config['learn_rate_drop_period'])

        if not 0 <= config['momentum'] <= 1:
            raise ValueError(f"momentum must be in [0, 1], got {config['momentum']!r}")
        if not config['initial_learn_rate'] > 0 or math.isinf(config['initial_learn_rate']):
            raise ValueError(f"initial_learn_rate must be positive and finite, got {config['initial_learn_rate']!r}")
        if not config['l2_regularization'] >= 0:
            raise ValueError(f"l2_regularization must be nonnegative, got {config['l2_regularization']!r}")
        if not 0 <= config['learn_rate_drop_factor'] <= 1:
            raise ValueError(f"learn_rate_drop_factor must be in [0, 1], got {config['learn_rate_drop_factor']!r}")
        if not 0 <= config['gradient_decay_factor'] < 1:
            raise ValueError(f"gradient_decay_factor must be in [0, 1), got {config['gradient_decay_factor']!r}")
        sq = config['squared_gradient_decay_factor']
        if sq is not None and not 0 <= sq < 1:
            raise ValueError(f"squared_gradient_decay_factor must be in [0, 1), got {sq!r}")
        if not config['epsilon'] > 0:
            raise ValueError(f"epsilon must be positive, got {config['epsilon']!r}")
        config['gradient_threshold'] = float(config['gradient_threshold'])
        if not config['gradient_threshold'] > 0:
            raise ValueError(f"gradient_threshold must be positive, got {config['gradient_threshold']!r}")

    @classmethod
    def from_yaml(cls, path: str) -> 'TrainingOptions':
        """Load options from a YAML file; values in the file override the defaults"""
        with open(path, 'r') as f:
            cfg = yaml.safe_load(f)
        if cfg is None:
            cfg = {}
        if not isinstance(cfg, dict):
            raise ValueError(f"Expected a mapping of training options in {path}")
        if isinstance(cfg.get('gradient_threshold'), str):
            cfg['gradient_threshold'] = float(cfg['gradient_threshold'])
        return cls(**cfg)

    def to_dict(self) -> Dict:
        return {key: getattr(self, key) for key in DEFAULT_OPTIONS}

    def __repr__(self):
        changed = {k: v for k, v in self.to_dict().items() if v != DEFAULT_OPTIONS[k]}
        return f"TrainingOptions({changed})"
