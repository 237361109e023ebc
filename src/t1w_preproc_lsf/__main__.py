from t1w_preproc_lsf.cli import main

main(prog_name="t1w-preproc-lsf")
