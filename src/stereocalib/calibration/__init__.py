"""
Camera-matrix calibration from planar grid correspondences.

A DLT estimate on normalized points is refined jointly with the grid corners by Levenberg-Marquardt,
optionally constrained to zero skew, then decomposed into K, R and t.
"""
