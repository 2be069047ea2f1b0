"""
Batch infographic renderer.

Modules:
- models: scene, request and result data types
- render: resizing, rotation and alpha blending on RGBA canvases
- text: font decoding, auto-fit sizing and single-line rasterization
- generator: composes one infographic per source image
- scheduler: bounded-parallel batch execution with progress reporting
- core: request loading and batch orchestration
- assets: input image discovery and CPU info
- fonts: system font catalog and fallback chain
- templates: saved template persistence
"""
