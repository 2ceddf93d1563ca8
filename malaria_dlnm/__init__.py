"""
Malaria-climate DLNM analysis.

Distributed lag non-linear models relating monthly maximum temperature and
precipitation to district malaria case counts:

- phase0_data_prep: loading, cleaning, lag features, incidence
- phase1_core_model: Poisson GLM with cross-basis terms, RR prediction,
  district models and pooling
- phase5_outputs: exposure-response and lag-response figures
- run_analysis: command-line pipeline
"""

__version__ = '1.0.0'
