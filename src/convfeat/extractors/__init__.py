"""
Feature Extractors
==================

Dense per-cell feature extraction behind a uniform interface.

Design Principles:
    - Abstract base class (``FeatureExtractor``) defines the interface
    - ``CNNFeatureExtractor`` reads activations of pretrained CNN layers
    - Named parameters (``ParameterStore``) drive every extractor
    - Factory pattern via ``registry.create_extractor()`` driven by config
"""
