"""
Garment Edit Pipeline

Four-stage pipeline over external inference services:
1. Cutout - Foreground segmentation (BiRefNet on FAL)
2. Edit - Generative edit with guardrail suffix (Gemini)
3. Harmonize - Relight / shadow pass (FLUX image-to-image), best-effort
4. Upscale - Real-ESRGAN prediction with bounded polling, best-effort
"""
