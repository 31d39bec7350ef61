"""Multi-party approval and execution workflow for voucher operations and transfers."""
