"""Models, configuration, errors and the HTTP API shared by Cloudreel's components."""
