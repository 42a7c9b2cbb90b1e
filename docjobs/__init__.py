"""
DocJobs - Job Admission & Execution for document processing

Gates processing requests against plan entitlements, rate limits and
monthly credits, queues admitted jobs durably and runs document transforms
in an isolated worker pool.

Basic usage:
    from docjobs import DocJobs, DocJobsConfig
    from docjobs.transforms import TransformRegistry

    registry = TransformRegistry()
    registry.register('compress', compress_pdf)

    service = DocJobs.setup(DocJobsConfig.from_file('docjobs.yaml'), transform=registry)

    # Request path
    job_id = service.orchestrator.submit(account_id, 'compress', data, {'quality': 'low'})

    # Later
    print(service.orchestrator.get_job(job_id, account_id))
"""

from docjobs.config.docjobs_config import DocJobsConfig
from docjobs.service import DocJobs

__all__ = ['DocJobs', 'DocJobsConfig']

__version__ = '1.0.0'
