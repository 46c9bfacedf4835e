"""
Image Processing Pipeline

Six phases per job, bounded by one deadline:
1. Resize - fit within the maximum dimensions
2. Background removal - external provider (remove.bg, Clipdrop) or mock
3. Flip - horizontal mirror
4. Encode - PNG or WebP
5. Persist - processed image to the blob store
6. Finalize - job marked completed
"""
