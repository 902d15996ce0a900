"""
Order Fulfillment Pipeline

matting -> private mirror -> {watermark, thumbnail} -> {upload, sign} -> terminal write
"""
