"""
convfeat
========

Dense per-cell CNN feature extraction for sliding-window object detection.

Activations of a pretrained convolutional network are turned into a grid of
feature cells whose pixel geometry (cell size, border loss) is derived from
the network topology alone.

Design Principles:
    - Parameter-driven: extractors are configured through named parameters
      (``netFile``, ``layerName``, ...) or a YAML config
    - Engine-agnostic: inference runs behind ``network.engine.InferenceEngine``
    - Shared networks: one loaded network per (structure, weights) pair
    - Fail early: geometry and dimension mismatches surface at configuration
      time, never per cell

Package Layout::

    cli/          Typer CLI commands (info, extract, params)
    extractors/   Extractor interface, parameter store, CNN extractor,
                  preprocessing, scaling/PCA, file loaders
    network/      Engine interface, PyTorch engine, network registry,
                  layer topology
    utils/        Logging
"""

__version__ = "0.1.0"
