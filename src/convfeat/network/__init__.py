"""
Network Layer
=============

Everything between convfeat and the inference engine.

Design Principles:
    - ``engine`` defines the abstract ``InferenceEngine`` / ``Network`` pair
    - ``torch_engine`` builds sequential PyTorch networks from YAML structure files
    - ``registry`` shares one loaded network per (structure, weights) pair
    - ``topology`` derives cell size and border loss from layer geometry
"""
