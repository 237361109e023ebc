"""t1w_preproc_lsf — submit T1w preprocessing to LSF as dependent jobs.

One invocation allocates a node-local scratch directory, then declares the
container stages (input preparation, HD-BET skull stripping,
postprocessing) and a cleanup job as a dependency chain that LSF enforces.

Typical usage::

    from t1w_preproc_lsf.config import PipelineConfig
    from t1w_preproc_lsf.pipeline import PipelineRequest, run_pipeline

    cfg     = PipelineConfig.from_yaml("/etc/t1w_preproc/config.yaml")
    request = PipelineRequest("/data/in", "/data/out", "/data/list.txt", "participant")
    result  = run_pipeline(request, cfg)
    print(result.job_ids)
"""

__version__ = "0.1.0"
