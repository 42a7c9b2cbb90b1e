from docjobs.config.docjobs_config import DocJobsConfig

__all__ = ['DocJobsConfig']
