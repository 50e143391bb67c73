"""
Radial distortion models and their fitting from lines that are straight in the scene.
"""
