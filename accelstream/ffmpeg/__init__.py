"""
AccelStream FFmpeg Module

Capability probing, pipeline configuration and FFmpeg process management.

Components:
- CapabilityProber: Codec and hardware acceleration detection
- PipelineConfigurator: Pipeline decisions per channel and tier
- FFmpegCommandBuilder: Renders pipeline specs as FFmpeg commands
- FFmpegProcessPool: Opens and releases FFmpeg pipelines
"""
